import time
from dataclasses import dataclass
from typing import Callable

from .failure import FailureHandler
from .kv_store import TTLStore
from .request_store import RequestStore
from .result_cache import StageResultCache
from .timeout_store import TimeoutRecordStore
from .transport import StageTransport


@dataclass
class PipelineServices:
    """Shared state every pipeline component works against."""

    kv: TTLStore
    requests: RequestStore
    results: StageResultCache
    timeouts: TimeoutRecordStore
    failures: FailureHandler
    transport: StageTransport
    clock: Callable[[], float] = time.time

    @classmethod
    def build(
        cls,
        db_path: str,
        transport: StageTransport,
        *,
        request_ttl_s: int = 3600,
        result_ttl_s: int = 3600,
        timeout_budget_ms: int = 20000,
        timeout_grace_s: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> "PipelineServices":
        kv = TTLStore(db_path, clock=clock)
        requests = RequestStore(kv, ttl_s=request_ttl_s)
        return cls(
            kv=kv,
            requests=requests,
            results=StageResultCache(kv, ttl_s=result_ttl_s),
            timeouts=TimeoutRecordStore(kv, budget_ms=timeout_budget_ms, grace_s=timeout_grace_s),
            failures=FailureHandler(requests),
            transport=transport,
            clock=clock,
        )
