import asyncio
import logging
from typing import Optional

from . import state_machine
from .errors import ProcessingTimeout
from .services import PipelineServices


logger = logging.getLogger("uvicorn.error")


class TimeoutMonitor:
    """Fails requests that outlived their processing budget.

    check() has no timer of its own. It is driven from the HTTP trigger, the CLI,
    or the periodic sweeper the app runs in its lifespan.
    """

    def __init__(self, services: PipelineServices):
        self.services = services

    async def _attribute(self, request_id: str) -> str:
        request = await self.services.requests.get(request_id)
        if request is not None:
            entry = request.running_entry()
            if entry is not None:
                return entry.agent
            active = state_machine.active_agent(request.status)
            if active:
                return active
        return state_machine.STAGE_ORDER[0]

    async def check(self, request_id: str) -> bool:
        """Return True when the request was over budget and has been failed."""
        record = await self.services.timeouts.get(request_id)
        if record is None:
            return False
        elapsed_ms = self.services.timeouts.now_ms() - record.start_time_ms
        if elapsed_ms <= record.max_duration_ms:
            return False

        agent = await self._attribute(request_id)
        logger.warning(
            "Processing timeout: request=%s agent=%s elapsed_ms=%s budget_ms=%s",
            request_id,
            agent,
            elapsed_ms,
            record.max_duration_ms,
        )
        error = ProcessingTimeout(
            f"Processing exceeded maximum duration of {record.max_duration_ms}ms",
            {"elapsedMs": elapsed_ms, "maxDurationMs": record.max_duration_ms},
        )
        await self.services.failures.fail(request_id, agent, error)
        await self.services.timeouts.delete(request_id)
        return True

    async def sweep(self) -> int:
        """Check every pending timeout record and purge expired keys."""
        timed_out = 0
        for request_id in await self.services.timeouts.pending_request_ids():
            if await self.check(request_id):
                timed_out += 1
        purged = await self.services.kv.purge_expired()
        if timed_out or purged:
            logger.info("Timeout sweep: timed_out=%s purged=%s", timed_out, purged)
        return timed_out

    async def run_forever(self, interval_s: float, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception as exc:
                logger.error("Timeout sweep failed: %s", exc)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue
