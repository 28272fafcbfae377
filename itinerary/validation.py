import asyncio
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .errors import UpstreamFailure
from .places import PlacesClient, PlacesRateLimited
from .schemas import (
    Activity,
    ActivityValidation,
    ApiUsage,
    Coordinates,
    CurationResult,
    ValidationResults,
    ValidationSummary,
)
from .services import PipelineServices
from .stage_agent import StageAgent, StageContext, StageOutcome


logger = logging.getLogger("uvicorn.error")

EARTH_RADIUS_KM = 6371.0
VERIFIED_THRESHOLD = 0.7
LOW_CONFIDENCE_THRESHOLD = 0.5
NO_MATCH_CONFIDENCE = 0.3


def haversine_km(a: Coordinates, lat: float, lng: float) -> float:
    d_lat = math.radians(lat - a.lat)
    d_lng = math.radians(lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(math.radians(a.lat)) * math.cos(math.radians(lat)) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_score(distance_km: float) -> float:
    if distance_km > 10:
        return 0.1
    if distance_km > 5:
        return 0.4
    if distance_km > 1:
        return 0.7
    return 1.0


def _place_location(place: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    location = (place.get("geometry") or {}).get("location") or {}
    lat, lng = location.get("lat"), location.get("lng")
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def match_confidence(activity: Activity, place: Dict[str, Any]) -> float:
    """Weighted blend of name overlap, proximity and business status."""
    activity_name = activity.name.lower()
    place_name = str(place.get("name") or "").lower()
    name_match = bool(place_name) and (place_name in activity_name or activity_name in place_name)
    name_score = 0.8 if name_match else 0.3

    coords = _place_location(place)
    location_score = 0.1
    if coords:
        location_score = distance_score(haversine_km(activity.location.coordinates, *coords))

    status_score = 1.0 if place.get("business_status") == "OPERATIONAL" else 0.7
    confidence = name_score * 0.5 + location_score * 0.3 + status_score * 0.2
    return min(max(confidence, 0.0), 1.0)


def search_query(activity: Activity) -> str:
    neighborhood = f" {activity.location.neighborhood}" if activity.location.neighborhood else ""
    return f"{activity.name}{neighborhood}".strip()


def summarize(activities: List[Activity]) -> ValidationSummary:
    statuses = [activity.validation.status for activity in activities]
    total = len(activities)
    average = sum(activity.validation.confidence for activity in activities) / total if total else 0.0
    return ValidationSummary(
        total_activities=total,
        verified_count=statuses.count("verified"),
        pending_count=statuses.count("pending"),
        failed_count=statuses.count("failed"),
        average_confidence=round(average, 2),
    )


class ValidationAgent(StageAgent):
    """Checks every curated activity against Places, one call at a time."""

    name = "validation"

    def __init__(self, services: PipelineServices, places: PlacesClient, delay_ms: int = 100):
        super().__init__(services)
        self.places = places
        self.delay_s = max(delay_ms, 0) / 1000.0

    async def validate_activity(self, activity: Activity, now: datetime) -> Activity:
        place = await self.places.text_search(
            search_query(activity),
            activity.location.coordinates.lat,
            activity.location.coordinates.lng,
        )
        if not place:
            activity.validation = ActivityValidation(
                status="pending",
                last_updated=now,
                confidence=NO_MATCH_CONFIDENCE,
                issues=["No matching place found"],
            )
            return activity
        confidence = match_confidence(activity, place)
        place_id = place.get("place_id")
        activity.validation = ActivityValidation(
            status="verified" if confidence > VERIFIED_THRESHOLD else "pending",
            google_place_id=place_id,
            last_updated=now,
            confidence=confidence,
            issues=["Low confidence match"] if confidence < LOW_CONFIDENCE_THRESHOLD else [],
        )
        activity.location.google_place_id = place_id
        if place.get("formatted_address"):
            activity.location.address = place["formatted_address"]
        coords = _place_location(place)
        if coords:
            activity.location.coordinates = Coordinates(lat=coords[0], lng=coords[1])
        return activity

    async def execute(self, ctx: StageContext) -> StageOutcome:
        curation: CurationResult = ctx.upstream
        usage = ApiUsage()
        validated: List[Activity] = []
        for index, activity in enumerate(curation.activities):
            if index and self.delay_s:
                await asyncio.sleep(self.delay_s)
            now = self.services.requests.now()
            try:
                validated.append(await self.validate_activity(activity, now))
                usage.places_api_calls += 1
            except UpstreamFailure as exc:
                if isinstance(exc, PlacesRateLimited):
                    usage.rate_limit_hits += 1
                usage.errors += 1
                logger.warning("Validation failed for activity %s (%s): %s", activity.id, activity.name, exc)
                activity.validation = ActivityValidation(
                    status="failed",
                    last_updated=now,
                    confidence=0.0,
                    issues=[str(exc.message or exc)],
                )
                validated.append(activity)

        summary_model = summarize(validated)
        result = ValidationResults(
            validated_activities=validated,
            validation_summary=summary_model,
            api_usage=usage,
        )
        summary = {
            "validationCompleted": True,
            "activitiesValidated": summary_model.total_activities,
            "verifiedCount": summary_model.verified_count,
            "averageConfidence": summary_model.average_confidence,
            "apiCallsMade": usage.places_api_calls,
        }
        return StageOutcome(
            result=result,
            summary=summary,
            response={"totalActivities": summary_model.total_activities},
        )
