import logging
from typing import Optional

from . import state_machine
from .errors import InvalidTransition, NotFoundError
from .request_store import RequestStore
from .schemas import ItineraryRequest, ProcessingError


logger = logging.getLogger("uvicorn.error")


class FailureHandler:
    """Moves a request to the terminal failed state, recording the error on the failing stage."""

    def __init__(self, requests: RequestStore):
        self.requests = requests

    async def fail(self, request_id: str, agent: str, error: BaseException) -> Optional[ItineraryRequest]:
        if not request_id:
            logger.error("Cannot record %s failure without a request id: %s", agent, error)
            return None

        def mutate(request: ItineraryRequest) -> None:
            now = self.requests.now()
            processing_error = ProcessingError.from_exception(error, agent, now)
            request.status = state_machine.transition(request.status, state_machine.fail(agent))
            entry = request.running_entry(agent)
            if entry is not None:
                entry.mark_failed(now, processing_error)
            request.error_details = processing_error

        try:
            request = await self.requests.update(request_id, mutate)
        except NotFoundError:
            logger.error("Cannot handle %s failure - request %s not found", agent, request_id)
            return None
        except InvalidTransition:
            current = await self.requests.get(request_id)
            logger.warning(
                "Ignoring %s failure for request %s already in status %s: %s",
                agent,
                request_id,
                current.status if current else "unknown",
                error,
            )
            return current
        logger.error(
            "Agent failure handled: request=%s agent=%s code=%s message=%s",
            request_id,
            agent,
            request.error_details.code if request.error_details else "",
            request.error_details.message if request.error_details else "",
        )
        return request
