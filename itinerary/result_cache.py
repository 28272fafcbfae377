import logging
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel

from .errors import MissingUpstreamResult
from .kv_store import TTLStore
from .schemas import CurationResult, ResearchResult, ResponseResult, ValidationResults


logger = logging.getLogger("uvicorn.error")

DEFAULT_RESULT_TTL_S = 3600
RESULT_MODELS: Dict[str, Type[BaseModel]] = {
    "research": ResearchResult,
    "curation": CurationResult,
    "validation": ValidationResults,
    "response": ResponseResult,
}


def result_key(agent: str, request_id: str) -> str:
    return f"{agent}_results:{request_id}"


class StageResultCache:
    """Per-stage output blobs keyed by request id.

    Entries are only weakly tied to the request record: they carry their own TTL
    and may outlive it or expire before it.
    """

    def __init__(self, kv: TTLStore, ttl_s: int = DEFAULT_RESULT_TTL_S):
        self.kv = kv
        self.ttl_s = ttl_s

    async def put(self, agent: str, request_id: str, result: Any) -> None:
        if isinstance(result, BaseModel):
            payload = result.model_dump(mode="json", by_alias=True)
        else:
            payload = result
        await self.kv.set(result_key(agent, request_id), payload, ttl_s=self.ttl_s)

    async def get(self, agent: str, request_id: str) -> Optional[Any]:
        payload = await self.kv.get(result_key(agent, request_id))
        if payload is None:
            return None
        model = RESULT_MODELS.get(agent)
        if model is None:
            return payload
        try:
            return model.model_validate(payload)
        except Exception as exc:
            logger.error("Stored %s result for %s is unreadable: %s", agent, request_id, exc)
            return None

    async def require(self, agent: str, request_id: str) -> Any:
        result = await self.get(agent, request_id)
        if result is None:
            raise MissingUpstreamResult(
                f"{agent.capitalize()} results not found",
                {"requestId": request_id, "agent": agent},
            )
        return result

    async def delete(self, agent: str, request_id: str) -> bool:
        return await self.kv.delete(result_key(agent, request_id))
