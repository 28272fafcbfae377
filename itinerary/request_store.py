import logging
import uuid
from typing import Any, Callable, Dict, Optional

from .errors import ConcurrentModification, NotFoundError
from .kv_store import TTLStore
from .schemas import ItineraryRequest, utc_datetime


logger = logging.getLogger("uvicorn.error")

REQUEST_KEY = "itinerary_request:{request_id}"
DEFAULT_REQUEST_TTL_S = 3600


def request_key(request_id: str) -> str:
    return REQUEST_KEY.format(request_id=request_id)


class RequestStore:
    """TTL-bound ItineraryRequest records with versioned (compare-and-swap) writes."""

    def __init__(self, kv: TTLStore, ttl_s: int = DEFAULT_REQUEST_TTL_S, max_attempts: int = 5):
        self.kv = kv
        self.ttl_s = ttl_s
        self.max_attempts = max_attempts

    def now(self):
        return utc_datetime(self.kv.clock())

    async def create(
        self,
        user_id: str,
        requirements: Dict[str, Any],
        request_id: Optional[str] = None,
    ) -> ItineraryRequest:
        created_at = self.now()
        request = ItineraryRequest(
            id=request_id or str(uuid.uuid4()),
            user_id=user_id,
            requirements=dict(requirements or {}),
            status="initiated",
            created_at=created_at,
            updated_at=created_at,
            version=0,
        )
        try:
            return await self.save(request)
        except ConcurrentModification as exc:
            raise ConcurrentModification("Itinerary request already exists", {"requestId": request.id}) from exc

    async def get(self, request_id: str) -> Optional[ItineraryRequest]:
        found = await self.kv.get_versioned(request_key(request_id))
        if not found:
            return None
        payload, version = found
        try:
            request = ItineraryRequest.model_validate(payload)
        except Exception as exc:
            logger.error("Request %s record is unreadable: %s", request_id, exc)
            return None
        request.version = version
        return request

    async def require(self, request_id: str) -> ItineraryRequest:
        request = await self.get(request_id)
        if request is None:
            raise NotFoundError("Itinerary request not found", {"requestId": request_id})
        return request

    async def save(self, request: ItineraryRequest) -> ItineraryRequest:
        """Persist the whole record if nobody wrote it since it was read."""
        payload = request.model_dump(mode="json", by_alias=True, exclude={"version"})
        version = await self.kv.compare_and_set(
            request_key(request.id),
            payload,
            expected_version=request.version,
            ttl_s=self.ttl_s,
        )
        if version is None:
            raise ConcurrentModification(
                "Itinerary request was modified concurrently",
                {"requestId": request.id, "expectedVersion": request.version},
            )
        request.version = version
        return request

    async def update(
        self,
        request_id: str,
        mutate: Callable[[ItineraryRequest], None],
    ) -> ItineraryRequest:
        """Read-modify-write loop: re-read and re-apply mutate when a write loses the race.

        mutate runs against a fresh copy on every attempt and may raise to abort;
        nothing is written in that case.
        """
        for attempt in range(1, self.max_attempts + 1):
            request = await self.require(request_id)
            mutate(request)
            request.updated_at = self.now()
            try:
                return await self.save(request)
            except ConcurrentModification:
                logger.warning("Request %s write conflict (attempt %s/%s)", request_id, attempt, self.max_attempts)
        raise ConcurrentModification(
            "Itinerary request kept changing underneath the writer",
            {"requestId": request_id, "attempts": self.max_attempts},
        )

    async def delete(self, request_id: str) -> bool:
        return await self.kv.delete(request_key(request_id))
