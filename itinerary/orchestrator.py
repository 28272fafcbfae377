import logging
import uuid
from typing import Any, Dict

from . import state_machine
from .schemas import AgentProcessingLog, ItineraryRequest
from .services import PipelineServices


logger = logging.getLogger("uvicorn.error")


class Orchestrator:
    """Entry point: moves an intake request into the pipeline and triggers the first stage."""

    def __init__(self, services: PipelineServices):
        self.services = services

    async def begin(self, request_id: str) -> Dict[str, Any]:
        first = state_machine.STAGE_ORDER[0]

        def mutate(request: ItineraryRequest) -> None:
            request.status = state_machine.transition(request.status, state_machine.BEGIN)
            request.itinerary_id = str(uuid.uuid4())
            request.processing_log.append(
                AgentProcessingLog.start(first, self.services.requests.now(), {"initialized": True})
            )

        request = await self.services.requests.update(request_id, mutate)
        record = await self.services.timeouts.start(request_id)
        logger.info(
            "Pipeline started: request=%s user=%s budget_ms=%s",
            request_id,
            request.user_id,
            record.max_duration_ms,
        )

        entry = request.running_entry(first)
        try:
            await self.services.transport.trigger(first, request_id, entry.invocation_id if entry else None)
        except Exception as exc:
            logger.error("Failed to trigger %s agent for %s: %s", first, request_id, exc)
            await self.services.failures.fail(request_id, first, exc)
            raise
        return {
            "requestId": request_id,
            "status": state_machine.in_progress(first),
            "message": "Processing initiated successfully",
        }
