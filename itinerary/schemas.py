import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


ProcessingStatus = Literal[
    "initiated",
    "research-in-progress",
    "research-completed",
    "curation-in-progress",
    "curation-completed",
    "validation-in-progress",
    "validation-completed",
    "response-in-progress",
    "completed",
    "failed",
]
AgentName = Literal["research", "curation", "validation", "response"]
LogStatus = Literal["running", "completed", "failed"]
ActivityCategory = Literal["dining", "sightseeing", "culture", "nature", "shopping", "nightlife", "transport"]

AGENTS: tuple = ("research", "curation", "validation", "response")


def utc_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _clamp_unit(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ProcessingError(WireModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @classmethod
    def from_exception(cls, error: BaseException, agent: str, now: datetime) -> "ProcessingError":
        details = dict(getattr(error, "details", None) or {})
        details.setdefault("agent", agent)
        details.setdefault("type", type(error).__name__)
        return cls(
            code=str(getattr(error, "code", None) or "AGENT_FAILURE"),
            message=str(getattr(error, "message", None) or error) or "Agent processing failed",
            details=details,
            timestamp=now,
        )


class AgentProcessingLog(WireModel):
    agent: AgentName
    start_time: datetime
    end_time: Optional[datetime] = None
    status: LogStatus = "running"
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[ProcessingError] = None
    invocation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def start(cls, agent: str, now: datetime, data: Optional[Dict[str, Any]] = None) -> "AgentProcessingLog":
        return cls(agent=agent, start_time=now, data=dict(data or {}))

    def mark_completed(self, now: datetime, data: Dict[str, Any]) -> None:
        self.status = "completed"
        self.end_time = now
        self.data = {**self.data, **data}

    def mark_failed(self, now: datetime, error: ProcessingError) -> None:
        self.status = "failed"
        self.end_time = now
        self.error = error


class ItineraryRequest(WireModel):
    id: str
    user_id: str
    itinerary_id: Optional[str] = None
    requirements: Dict[str, Any] = Field(default_factory=dict)
    status: ProcessingStatus = "initiated"
    processing_log: List[AgentProcessingLog] = Field(default_factory=list)
    error_details: Optional[ProcessingError] = None
    created_at: datetime
    updated_at: datetime
    version: int = 0

    def running_entries(self) -> List[AgentProcessingLog]:
        return [entry for entry in self.processing_log if entry.status == "running"]

    def running_entry(self, agent: Optional[str] = None) -> Optional[AgentProcessingLog]:
        for entry in self.processing_log:
            if entry.status == "running" and (agent is None or entry.agent == agent):
                return entry
        return None

    def entry_for_invocation(self, invocation_id: str) -> Optional[AgentProcessingLog]:
        for entry in self.processing_log:
            if entry.invocation_id == invocation_id:
                return entry
        return None

    def latest_entry(self, agent: str) -> Optional[AgentProcessingLog]:
        for entry in reversed(self.processing_log):
            if entry.agent == agent:
                return entry
        return None


class TimeoutRecord(WireModel):
    start_time_ms: int
    max_duration_ms: int


# Stage result schemas. Collaborator JSON is validated into these; anything that
# does not fit raises and is reported as OutputValidationError by the stage.


class Coordinates(WireModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Destination(WireModel):
    name: str = Field(min_length=1)
    city: str = Field(min_length=1)
    region: str = ""
    country: str = Field(min_length=1)
    time_zone: str = "UTC"
    coordinates: Coordinates


class ContextData(WireModel):
    culture: List[str] = Field(default_factory=list)
    cuisine: List[str] = Field(default_factory=list)
    attractions: List[str] = Field(default_factory=list)
    neighborhoods: List[str] = Field(default_factory=list)
    transportation: List[str] = Field(default_factory=list)
    seasonal_considerations: List[str] = Field(default_factory=list)
    budget_insights: Dict[str, str] = Field(default_factory=dict)


class PersonaRecommendation(WireModel):
    focus: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ResearchResult(WireModel):
    destination: Destination
    context_data: ContextData
    persona_recommendations: Dict[str, PersonaRecommendation]
    research_sources: List[str] = Field(default_factory=list)
    confidence: float

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return _clamp_unit(value)


class ActivityTiming(WireModel):
    day_number: int = Field(ge=1)
    start_time: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    duration: int = Field(gt=0)
    flexibility: Literal["fixed", "flexible", "weather-dependent"] = "flexible"
    buffer_time: int = Field(default=30, ge=0)


class AccessibilityInfo(WireModel):
    wheelchair_accessible: bool = False
    hearing_assistance: bool = False
    visual_assistance: bool = False
    notes: List[str] = Field(default_factory=list)


class ActivityLocation(WireModel):
    name: str = Field(min_length=1)
    address: str = ""
    coordinates: Coordinates
    neighborhood: str = ""
    google_place_id: Optional[str] = None
    accessibility: AccessibilityInfo = Field(default_factory=AccessibilityInfo)


class ActivityValidation(WireModel):
    status: Literal["verified", "pending", "failed"] = "pending"
    google_place_id: Optional[str] = None
    last_updated: Optional[datetime] = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    issues: List[str] = Field(default_factory=list)


class PersonaContext(WireModel):
    reasoning: str = ""
    highlights: List[str] = Field(default_factory=list)
    tips: List[str] = Field(default_factory=list)


class Activity(WireModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    itinerary_id: Optional[str] = None
    name: str = Field(min_length=1)
    description: str = ""
    category: ActivityCategory
    timing: ActivityTiming
    location: ActivityLocation
    validation: ActivityValidation = Field(default_factory=ActivityValidation)
    persona_context: PersonaContext = Field(default_factory=PersonaContext)


class CostRange(WireModel):
    min: float = Field(default=0.0, ge=0)
    max: float = Field(default=0.0, ge=0)
    currency: str = "USD"

    @model_validator(mode="after")
    def _ordered(self) -> "CostRange":
        if self.min > self.max:
            raise ValueError("estimated cost min exceeds max")
        return self


class ItineraryOverview(WireModel):
    total_activities: int = 0
    estimated_cost: CostRange = Field(default_factory=CostRange)
    themes: List[str] = Field(default_factory=list)
    highlights: List[str] = Field(default_factory=list)
    family_considerations: Optional[List[str]] = None


class CurationMetadata(WireModel):
    interest_alignment: float
    child_friendliness: Optional[float] = None
    logistical_score: float
    diversity_score: float

    @field_validator("interest_alignment", "logistical_score", "diversity_score", "child_friendliness")
    @classmethod
    def _clamp_scores(cls, value: Optional[float]) -> Optional[float]:
        if value is None:
            return None
        return _clamp_unit(value)


class CurationResult(WireModel):
    activities: List[Activity] = Field(min_length=1)
    itinerary_overview: ItineraryOverview
    curation_metadata: CurationMetadata

    @model_validator(mode="after")
    def _count_activities(self) -> "CurationResult":
        self.itinerary_overview.total_activities = len(self.activities)
        return self


class ValidationSummary(WireModel):
    total_activities: int
    verified_count: int
    pending_count: int
    failed_count: int
    average_confidence: float


class ApiUsage(WireModel):
    places_api_calls: int = 0
    rate_limit_hits: int = 0
    errors: int = 0


class ValidationResults(WireModel):
    validated_activities: List[Activity]
    validation_summary: ValidationSummary
    api_usage: ApiUsage = Field(default_factory=ApiUsage)


class ProcessingMetrics(WireModel):
    total_duration_ms: int
    agent_durations_ms: Dict[str, int] = Field(default_factory=dict)
    api_calls_used: int = 0
    quality_score: float


class CostEstimate(CostRange):
    breakdown: Dict[str, float] = Field(default_factory=dict)


class ItineraryChecks(WireModel):
    location_verified: bool
    timing_realistic: bool
    accessibility_checked: bool
    cost_estimated: bool


class ItineraryValidationSummary(WireModel):
    overall_score: float
    checks: ItineraryChecks


class ItineraryMetadata(WireModel):
    processing_time_seconds: int
    agent_versions: Dict[str, str]
    quality_score: float
    validation_results: ItineraryValidationSummary
    cost_estimate: CostEstimate


class Itinerary(WireModel):
    id: str
    request_id: str
    user_id: str
    destination: Destination
    persona: Optional[str] = None
    status: Literal["completed"] = "completed"
    activities: List[Activity]
    metadata: ItineraryMetadata
    created_at: datetime
    updated_at: datetime


class ResponseResult(WireModel):
    request_id: str
    itinerary_id: str
    status: ProcessingStatus
    processing_metrics: ProcessingMetrics
    completed_at: datetime


# HTTP request bodies


class StageRunRequest(WireModel):
    request_id: str = Field(min_length=1)


class ProcessRequestBody(WireModel):
    itinerary_request_id: str = Field(min_length=1)


class IntakeRequest(WireModel):
    user_id: str = Field(min_length=1)
    requirements: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
