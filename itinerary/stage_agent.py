import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from . import state_machine
from .errors import HandoffFailure, NotFoundError, OutputValidationError, StageConflict
from .schemas import AgentProcessingLog, ItineraryRequest
from .services import PipelineServices


logger = logging.getLogger("uvicorn.error")
ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class StageContext:
    request: ItineraryRequest
    entry: AgentProcessingLog
    upstream: Any = None
    inputs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StageOutcome:
    result: BaseModel
    # Merged into the stage's log entry data.
    summary: Dict[str, Any] = field(default_factory=dict)
    # Extra fields for the stage's own success envelope.
    response: Dict[str, Any] = field(default_factory=dict)


def parse_output(model: Type[ModelT], payload: Any, agent: str) -> ModelT:
    """Validate collaborator output into a stage result model."""
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        errors = [
            {"loc": ".".join(str(part) for part in err.get("loc", ())), "msg": err.get("msg")}
            for err in exc.errors()[:10]
        ]
        raise OutputValidationError(
            f"Invalid {agent} result structure",
            {"errors": errors, "errorCount": exc.error_count()},
        ) from exc


class _AlreadyCompleted(Exception):
    def __init__(self, data: Dict[str, Any]):
        super().__init__("already completed")
        self.data = data


class StageAgent:
    """One pipeline stage: fetch inputs, run the collaborator, persist, complete, hand off.

    Precondition failures (unknown request, missing upstream result, stage not
    active) are raised without touching the request. Anything that goes wrong
    after that is recorded through the failure handler before it propagates.
    """

    name: str = ""

    def __init__(self, services: PipelineServices):
        self.services = services

    @property
    def upstream_agent(self) -> Optional[str]:
        return state_machine.previous_agent(self.name)

    @property
    def required_results(self) -> Tuple[str, ...]:
        """Earlier stage results that must be cached before this stage may run."""
        return (self.upstream_agent,) if self.upstream_agent else ()

    async def execute(self, ctx: StageContext) -> StageOutcome:
        raise NotImplementedError

    async def after_completion(self, request: ItineraryRequest, outcome: StageOutcome) -> None:
        """Hook that runs once the completion write and handoff both succeeded."""
        return None

    async def run(self, request_id: str, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        started = time.monotonic()
        request = await self.services.requests.require(request_id)
        inputs: Dict[str, Any] = {}
        for agent in self.required_results:
            inputs[agent] = await self.services.results.require(agent, request_id)
        try:
            entry = self._select_entry(request, idempotency_key)
        except _AlreadyCompleted as done:
            return self._replay(request_id, done.data)

        ctx = StageContext(
            request=request,
            entry=entry,
            upstream=inputs.get(self.upstream_agent) if self.upstream_agent else None,
            inputs=inputs,
        )
        logger.info("Agent processing started: agent=%s request=%s", self.name, request_id)
        try:
            outcome = await self.execute(ctx)
            await self._ensure_running(request_id, entry.invocation_id, outcome.summary)
            await self.services.results.put(self.name, request_id, outcome.result)
            completed = await self._complete(request_id, entry.invocation_id, outcome.summary)
        except _AlreadyCompleted as done:
            logger.info("Agent %s for %s was completed by a concurrent invocation", self.name, request_id)
            return self._replay(request_id, done.data)
        except Exception as exc:
            logger.error("Agent processing failed: agent=%s request=%s error=%s", self.name, request_id, exc)
            await self.services.failures.fail(request_id, self.name, exc)
            raise

        await self._handoff(completed)
        await self.after_completion(completed, outcome)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Agent processing completed: agent=%s request=%s duration_ms=%s", self.name, request_id, duration_ms)
        return {
            "requestId": request_id,
            "status": state_machine.completed_status(self.name),
            **outcome.summary,
            **outcome.response,
            "processingTime": duration_ms,
        }

    def _select_entry(self, request: ItineraryRequest, idempotency_key: Optional[str]) -> AgentProcessingLog:
        if idempotency_key:
            entry = request.entry_for_invocation(idempotency_key)
            if entry is None or entry.agent != self.name:
                raise StageConflict(
                    f"Unknown {self.name} invocation",
                    {"requestId": request.id, "idempotencyKey": idempotency_key},
                )
        else:
            entry = request.running_entry(self.name) or request.latest_entry(self.name)
            if entry is None:
                raise StageConflict(
                    f"{self.name} stage is not active (request status {request.status})",
                    {"requestId": request.id, "status": request.status},
                )
        if entry.status == "completed":
            raise _AlreadyCompleted(entry.data)
        if entry.status != "running" or request.status != state_machine.in_progress(self.name):
            raise StageConflict(
                f"{self.name} stage is not active (request status {request.status})",
                {"requestId": request.id, "status": request.status, "entryStatus": entry.status},
            )
        return entry

    def _replay(self, request_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Agent %s already completed for %s; replaying", self.name, request_id)
        return {
            "requestId": request_id,
            "status": state_machine.completed_status(self.name),
            **data,
            "replayed": True,
        }

    def _running_attempt(self, request: ItineraryRequest, invocation_id: str) -> AgentProcessingLog:
        entry = request.entry_for_invocation(invocation_id)
        if entry is not None and entry.status == "completed":
            raise _AlreadyCompleted(entry.data)
        if entry is None or entry.status != "running":
            raise StageConflict(
                f"{self.name} attempt is no longer running",
                {"requestId": request.id, "invocationId": invocation_id},
            )
        return entry

    def _request_gone(self, request_id: str, summary: Dict[str, Any], exc: NotFoundError) -> Exception:
        # The last stage deletes the request record once it has completed.
        if state_machine.next_agent(self.name) is None:
            logger.info("Request %s was already finished by another %s attempt", request_id, self.name)
            return _AlreadyCompleted(summary)
        return exc

    async def _ensure_running(self, request_id: str, invocation_id: str, summary: Dict[str, Any]) -> None:
        """Re-read the request so a failed or superseded attempt never writes its result."""
        try:
            request = await self.services.requests.require(request_id)
        except NotFoundError as exc:
            raise self._request_gone(request_id, summary, exc) from exc
        self._running_attempt(request, invocation_id)

    async def _complete(self, request_id: str, invocation_id: str, summary: Dict[str, Any]) -> ItineraryRequest:
        following = state_machine.next_agent(self.name)

        def mutate(request: ItineraryRequest) -> None:
            entry = self._running_attempt(request, invocation_id)
            target = state_machine.transition(request.status, state_machine.complete(self.name))
            now = self.services.requests.now()
            entry.mark_completed(now, summary)
            request.status = target
            if following:
                request.processing_log.append(AgentProcessingLog.start(following, now))

        try:
            return await self.services.requests.update(request_id, mutate)
        except NotFoundError as exc:
            raise self._request_gone(request_id, summary, exc) from exc

    async def _handoff(self, request: ItineraryRequest) -> None:
        following = state_machine.next_agent(self.name)
        if not following:
            return
        entry = request.running_entry(following)
        try:
            await self.services.transport.trigger(
                following, request.id, entry.invocation_id if entry else None
            )
        except HandoffFailure as exc:
            # Our own work is committed; the attempt that never started is what failed.
            logger.error("Handoff %s -> %s failed for %s: %s", self.name, following, request.id, exc)
            await self.services.failures.fail(request.id, following, exc)
            raise
