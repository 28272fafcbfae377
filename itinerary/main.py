import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import require_internal_auth
from .config import AppSettings, load_settings
from .db import Database
from .errors import NotFoundError, PipelineError
from .itinerary_store import ItineraryStore
from .llm import ContentClient
from .pipeline import Pipeline
from .places import PlacesClient
from .responses import error_response, success_response
from .schemas import IntakeRequest, ProcessRequestBody, StageRunRequest
from .services import PipelineServices
from .transport import IDEMPOTENCY_HEADER, StageTransport


logger = logging.getLogger("uvicorn.error")

router = APIRouter()

HTTP_ERROR_CODES = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED", 401: "UNAUTHORIZED"}


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


@router.get("/health")
async def health():
    return {"ok": True}


@router.post("/agents/{agent}", dependencies=[Depends(require_internal_auth)])
async def run_agent(
    agent: str,
    body: StageRunRequest,
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
    pipeline: Pipeline = Depends(get_pipeline),
):
    stage = pipeline.agent(agent)
    try:
        data = await stage.run(body.request_id, idempotency_key=idempotency_key)
    except PipelineError:
        raise
    except Exception as exc:
        # Already recorded on the request by the stage; only the envelope is left.
        return error_response(500, "AGENT_FAILURE", f"{agent.capitalize()} processing failed", {"error": str(exc)})
    return success_response(data)


@router.post("/itineraries/requests")
async def create_request(body: IntakeRequest, pipeline: Pipeline = Depends(get_pipeline)):
    request = await pipeline.services.requests.create(body.user_id, body.requirements, request_id=body.request_id)
    logger.info("Itinerary request created: request=%s user=%s", request.id, request.user_id)
    return success_response(request.to_wire(), status_code=201)


@router.post("/itineraries/process-request")
async def process_request(body: ProcessRequestBody, pipeline: Pipeline = Depends(get_pipeline)):
    data = await pipeline.orchestrator.begin(body.itinerary_request_id)
    return success_response(data)


@router.get("/itineraries/records/{itinerary_id}")
async def get_itinerary(itinerary_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    itinerary = await pipeline.itineraries.get(itinerary_id)
    if itinerary is None:
        raise NotFoundError("Itinerary not found", {"itineraryId": itinerary_id})
    return success_response(itinerary.to_wire())


@router.get("/itineraries/{request_id}/status")
async def get_status(request_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    services = pipeline.services
    request = await services.requests.get(request_id)
    if request is not None:
        return success_response(
            {
                "requestId": request.id,
                "status": request.status,
                "processingLog": [entry.to_wire() for entry in request.processing_log],
                "errorDetails": request.error_details.to_wire() if request.error_details else None,
                "updatedAt": request.updated_at.isoformat(),
            }
        )
    # The request record is removed once the pipeline completes; the response result outlives it.
    final = await services.results.get("response", request_id)
    if final is not None:
        return success_response(
            {
                "requestId": request_id,
                "status": final.status,
                "itineraryId": final.itinerary_id,
                "processingMetrics": final.processing_metrics.to_wire(),
                "completedAt": final.completed_at.isoformat(),
            }
        )
    raise NotFoundError("Itinerary request not found", {"requestId": request_id})


@router.post("/internal/timeouts/{request_id}/check", dependencies=[Depends(require_internal_auth)])
async def check_timeout(request_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    timed_out = await pipeline.monitor.check(request_id)
    return success_response({"requestId": request_id, "timedOut": timed_out})


async def handle_pipeline_error(request: Request, exc: PipelineError):
    return error_response(exc.http_status, exc.code, exc.message or str(exc), exc.details)


async def handle_http_error(request: Request, exc: StarletteHTTPException):
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return error_response(exc.status_code, code, str(exc.detail))


async def handle_validation_error(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": ".".join(str(part) for part in err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return error_response(400, "INVALID_REQUEST", "Invalid request body", {"errors": errors})


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    content_client: Optional[ContentClient] = None,
    places_client: Optional[PlacesClient] = None,
    transport: Optional[StageTransport] = None,
    clock: Optional[Callable[[], float]] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        stop = asyncio.Event()
        sweeper = None
        if settings.timeout_sweep_interval_s > 0:
            sweeper = asyncio.create_task(
                app.state.pipeline.monitor.run_forever(settings.timeout_sweep_interval_s, stop)
            )
        try:
            yield
        finally:
            stop.set()
            if sweeper is not None:
                await sweeper
            await app.state.content_client.close()
            await app.state.places_client.close()
            await app.state.transport.close()

    app = FastAPI(title="Itinerary Pipeline", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.content_client = content_client or ContentClient(settings.content)
    app.state.places_client = places_client or PlacesClient(settings.places)
    app.state.transport = transport or StageTransport(
        settings.stage_base_url,
        settings.internal_api_key,
        retries=settings.handoff_retries,
        timeout_s=settings.handoff_timeout_s,
    )
    services = PipelineServices.build(
        app.state.db.path,
        app.state.transport,
        request_ttl_s=settings.request_ttl_s,
        result_ttl_s=settings.result_ttl_s,
        timeout_budget_ms=settings.timeout_budget_ms,
        timeout_grace_s=settings.timeout_grace_s,
        clock=clock or time.time,
    )
    app.state.pipeline = Pipeline(
        services,
        settings,
        app.state.content_client,
        app.state.places_client,
        ItineraryStore(app.state.db.path),
    )

    app.add_exception_handler(PipelineError, handle_pipeline_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("ITINERARY_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "itinerary.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
