import math
from typing import List, Optional

from .kv_store import TTLStore
from .schemas import TimeoutRecord


TIMEOUT_KEY_PREFIX = "processing_timeout:"
DEFAULT_BUDGET_MS = 20000


def timeout_key(request_id: str) -> str:
    return f"{TIMEOUT_KEY_PREFIX}{request_id}"


class TimeoutRecordStore:
    """One processing-deadline marker per request.

    The record lives for the budget window plus a grace period so the monitor
    can still observe an overrun after the budget has elapsed.
    """

    def __init__(self, kv: TTLStore, budget_ms: int = DEFAULT_BUDGET_MS, grace_s: int = 10):
        self.kv = kv
        self.budget_ms = budget_ms
        self.grace_s = grace_s

    def now_ms(self) -> int:
        return int(self.kv.clock() * 1000)

    async def start(self, request_id: str, start_time_ms: Optional[int] = None) -> TimeoutRecord:
        record = TimeoutRecord(
            start_time_ms=start_time_ms if start_time_ms is not None else self.now_ms(),
            max_duration_ms=self.budget_ms,
        )
        ttl_s = math.ceil(self.budget_ms / 1000) + max(0, self.grace_s)
        await self.kv.set(timeout_key(request_id), record.to_wire(), ttl_s=ttl_s)
        return record

    async def get(self, request_id: str) -> Optional[TimeoutRecord]:
        payload = await self.kv.get(timeout_key(request_id))
        if payload is None:
            return None
        return TimeoutRecord.model_validate(payload)

    async def delete(self, request_id: str) -> bool:
        return await self.kv.delete(timeout_key(request_id))

    async def pending_request_ids(self) -> List[str]:
        keys = await self.kv.keys(TIMEOUT_KEY_PREFIX)
        return [key[len(TIMEOUT_KEY_PREFIX):] for key in keys]
