import logging
from datetime import datetime
from typing import Dict, Tuple

import aiosqlite

from . import state_machine
from .itinerary_store import ItineraryStore
from .request_store import request_key
from .result_cache import result_key
from .schemas import (
    AGENTS,
    CostEstimate,
    CurationResult,
    Itinerary,
    ItineraryChecks,
    ItineraryMetadata,
    ItineraryRequest,
    ItineraryValidationSummary,
    ProcessingMetrics,
    ResearchResult,
    ResponseResult,
    ValidationResults,
)
from .services import PipelineServices
from .stage_agent import StageAgent, StageContext, StageOutcome
from .timeout_store import timeout_key


logger = logging.getLogger("uvicorn.error")

AGENT_VERSION = "1.0.0"
DEFAULT_PERSONA_ADHERENCE = 0.8
FAST_RUN_MS = 15000
SLOW_RUN_MS = 20000
COST_BREAKDOWN = {"activities": 0.6, "dining": 0.25, "transport": 0.15}


def quality_score(validation_confidence: float, persona_adherence: float, total_duration_ms: int) -> float:
    score = validation_confidence * 0.4 + persona_adherence * 0.4 + 0.2
    if total_duration_ms < FAST_RUN_MS:
        score += 0.1
    if total_duration_ms > SLOW_RUN_MS:
        score -= 0.1
    return min(max(score, 0.0), 1.0)


def agent_durations(request: ItineraryRequest) -> Dict[str, int]:
    durations: Dict[str, int] = {}
    for entry in request.processing_log:
        if entry.end_time and entry.start_time:
            durations[entry.agent] = int((entry.end_time - entry.start_time).total_seconds() * 1000)
    return durations


def processing_metrics(
    request: ItineraryRequest,
    validation: ValidationResults,
    now: datetime,
) -> ProcessingMetrics:
    total_ms = max(int((now - request.created_at).total_seconds() * 1000), 0)
    return ProcessingMetrics(
        total_duration_ms=total_ms,
        agent_durations_ms=agent_durations(request),
        api_calls_used=validation.api_usage.places_api_calls,
        quality_score=quality_score(
            validation.validation_summary.average_confidence,
            DEFAULT_PERSONA_ADHERENCE,
            total_ms,
        ),
    )


def build_itinerary(
    request: ItineraryRequest,
    research: ResearchResult,
    curation: CurationResult,
    validation: ValidationResults,
    metrics: ProcessingMetrics,
    now: datetime,
    itinerary_id: str,
) -> Itinerary:
    estimated = curation.itinerary_overview.estimated_cost
    cost = CostEstimate(
        min=estimated.min,
        max=estimated.max,
        currency=estimated.currency,
        breakdown={name: estimated.max * share for name, share in COST_BREAKDOWN.items()},
    )
    activities = [
        activity.model_copy(update={"itinerary_id": itinerary_id}, deep=True)
        for activity in validation.validated_activities
    ]
    checks = ItineraryChecks(
        location_verified=validation.validation_summary.verified_count > 0,
        timing_realistic=curation.curation_metadata.logistical_score > 0.7,
        accessibility_checked=True,
        cost_estimated=cost.max > 0,
    )
    metadata = ItineraryMetadata(
        processing_time_seconds=round(metrics.total_duration_ms / 1000),
        agent_versions={agent: AGENT_VERSION for agent in AGENTS},
        quality_score=metrics.quality_score,
        validation_results=ItineraryValidationSummary(
            overall_score=validation.validation_summary.average_confidence,
            checks=checks,
        ),
        cost_estimate=cost,
    )
    return Itinerary(
        id=itinerary_id,
        request_id=request.id,
        user_id=request.user_id,
        destination=research.destination,
        persona=request.requirements.get("persona"),
        activities=activities,
        metadata=metadata,
        created_at=now,
        updated_at=now,
    )


class ResponseAgent(StageAgent):
    """Assembles the final itinerary, stores it durably and clears the working keys."""

    name = "response"

    def __init__(self, services: PipelineServices, itineraries: ItineraryStore):
        super().__init__(services)
        self.itineraries = itineraries

    @property
    def required_results(self) -> Tuple[str, ...]:
        return ("research", "curation", "validation")

    async def execute(self, ctx: StageContext) -> StageOutcome:
        request = ctx.request
        research: ResearchResult = ctx.inputs["research"]
        curation: CurationResult = ctx.inputs["curation"]
        validation: ValidationResults = ctx.inputs["validation"]
        now = self.services.requests.now()
        metrics = processing_metrics(request, validation, now)

        # At most one itinerary per request; a repeated attempt gets the stored one back.
        itinerary = await self.itineraries.put(
            build_itinerary(request, research, curation, validation, metrics, now, request.itinerary_id)
        )

        result = ResponseResult(
            request_id=request.id,
            itinerary_id=itinerary.id,
            status=state_machine.COMPLETED,
            processing_metrics=metrics,
            completed_at=now,
        )
        summary = {
            "responseCompleted": True,
            "itineraryId": itinerary.id,
            "qualityScore": metrics.quality_score,
            "totalDuration": metrics.total_duration_ms,
        }
        return StageOutcome(
            result=result,
            summary=summary,
            response={
                "itinerary": {
                    "id": itinerary.id,
                    "destination": itinerary.destination.to_wire(),
                    "activities": len(itinerary.activities),
                    "qualityScore": itinerary.metadata.quality_score,
                },
                "processingMetrics": metrics.to_wire(),
            },
        )

    async def after_completion(self, request: ItineraryRequest, outcome: StageOutcome) -> None:
        keys = [
            request_key(request.id),
            result_key("research", request.id),
            result_key("curation", request.id),
            result_key("validation", request.id),
            timeout_key(request.id),
        ]
        try:
            removed = await self.services.kv.delete_many(keys)
        except aiosqlite.Error as exc:
            # Keys still expire on their TTL; the request itself is already completed.
            logger.warning("Working key cleanup failed for %s: %s", request.id, exc)
            return
        logger.info("Cleaned up %s working keys for %s", removed, request.id)
