import uuid
from typing import Any, Dict, Optional

from .config import StagePromptConfig
from .llm import ContentClient
from .prompts import CURATION_SYSTEM, build_curation_prompt
from .schemas import CurationResult, ResearchResult
from .services import PipelineServices
from .stage_agent import StageAgent, StageContext, StageOutcome, parse_output


def _prepare_activities(payload: Dict[str, Any], itinerary_id: Optional[str], now_iso: str) -> None:
    """Assign fresh ids and reset validation state; the validation stage owns the latter."""
    activities = payload.get("activities")
    if not isinstance(activities, list):
        return
    for activity in activities:
        if not isinstance(activity, dict):
            continue
        activity["id"] = str(uuid.uuid4())
        activity["itineraryId"] = itinerary_id
        location = activity.get("location")
        if isinstance(location, dict):
            location["googlePlaceId"] = None
        activity["validation"] = {
            "status": "pending",
            "googlePlaceId": None,
            "lastUpdated": now_iso,
            "confidence": 0,
            "issues": [],
        }


class CurationAgent(StageAgent):
    """Builds the day-by-day activity plan from the research context."""

    name = "curation"

    def __init__(self, services: PipelineServices, content: ContentClient, prompt_config: StagePromptConfig):
        super().__init__(services)
        self.content = content
        self.prompt_config = prompt_config

    async def execute(self, ctx: StageContext) -> StageOutcome:
        research: ResearchResult = ctx.upstream
        requirements = ctx.request.requirements
        payload = await self.content.generate_json(
            CURATION_SYSTEM.strip(),
            build_curation_prompt(requirements, research.to_wire()),
            temperature=self.prompt_config.temperature,
            max_tokens=self.prompt_config.max_tokens,
        )
        _prepare_activities(payload, ctx.request.itinerary_id, self.services.requests.now().isoformat())

        has_children = bool((requirements.get("travelerComposition") or {}).get("children"))
        overview = payload.get("itineraryOverview")
        metadata = payload.get("curationMetadata")
        if isinstance(overview, dict) and not has_children:
            overview.pop("familyConsiderations", None)
        if isinstance(metadata, dict) and not has_children:
            metadata.pop("childFriendliness", None)

        result = parse_output(CurationResult, payload, self.name)
        summary = {
            "curationCompleted": True,
            "activitiesCreated": len(result.activities),
            "interestAlignment": result.curation_metadata.interest_alignment,
            "logisticalScore": result.curation_metadata.logistical_score,
        }
        return StageOutcome(
            result=result,
            summary=summary,
            response={"themes": result.itinerary_overview.themes},
        )
