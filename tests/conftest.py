from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from itinerary.config import AppSettings
from itinerary.db import Database
from itinerary.failure import FailureHandler
from itinerary.main import create_app
from itinerary.services import PipelineServices
from itinerary.transport import StageTransport
from tests.fakes import FakeClock, FakeContentClient, FakePlacesClient, RecordingTransport


INTERNAL_KEY = "test-internal-key"
STAGE_BASE_URL = "http://itinerary.test"


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        internal_api_key=INTERNAL_KEY,
        stage_base_url=STAGE_BASE_URL,
        validation_delay_ms=0,
        timeout_sweep_interval_s=0,
        handoff_retries=0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


class _LateBoundApp:
    """ASGI shim so the stage transport can point at an app that is created after it."""

    def __init__(self) -> None:
        self.app = None

    async def __call__(self, scope, receive, send):
        await self.app(scope, receive, send)


def internal_headers(idempotency_key: str = "") -> dict:
    headers = {"X-Internal-Token": INTERNAL_KEY}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    return headers


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        content: FakeContentClient | None = None,
        places: FakePlacesClient | None = None,
        clock: FakeClock | None = None,
        transport=None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        content = content or FakeContentClient()
        places = places or FakePlacesClient()
        late = None
        if transport is None:
            # Handoffs call straight back into the same app, so a whole pipeline runs in-process.
            late = _LateBoundApp()
            transport = StageTransport(
                STAGE_BASE_URL,
                INTERNAL_KEY,
                retries=0,
                retry_backoff_s=0,
                client=AsyncClient(
                    transport=ASGITransport(app=late, raise_app_exceptions=False),
                    base_url=STAGE_BASE_URL,
                ),
            )
        app = create_app(
            settings,
            content_client=content,
            places_client=places,
            transport=transport,
            clock=clock,
        )
        if late is not None:
            late.app = app
        return app

    return _factory


@pytest.fixture
async def client(app_factory):
    app = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start=1_700_000_000.0)


@pytest.fixture
async def services(tmp_path: Path, clock: FakeClock) -> PipelineServices:
    db = Database(str(tmp_path / "services.db"))
    await db.init()
    return PipelineServices.build(db.path, RecordingTransport(), clock=clock)


@pytest.fixture
def failures(services: PipelineServices) -> FailureHandler:
    return services.failures
