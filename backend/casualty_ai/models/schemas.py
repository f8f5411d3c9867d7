import math
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Union
from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    model_validator,
)
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Confidence values at or above this are read as 0-100 percentages
PERCENT_THRESHOLD = 2.0


# ── Lenient coercion for model-produced payloads ────────

def _as_list(value: Any) -> List[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return [v for v in value if v is not None]
    return [value]


def _as_str_list(value: Any) -> List[str]:
    return [str(v).strip() for v in _as_list(value) if str(v).strip()]


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        parts = [str(v).strip() for v in value if v is not None and str(v).strip()]
        return ", ".join(parts) if parts else None
    if isinstance(value, dict):
        return None
    text = str(value).strip()
    return text or None


def _coerce_confidence(value: Any) -> Optional[float]:
    """Accept 0-1 floats, 2-100 percentages and numeric strings; clamp to [0, 1].

    NaN, infinities and integers too large for a float are treated as missing.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip().rstrip("%")
        try:
            value = float(text)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    if not math.isfinite(value):
        return None
    # Values just above 1 are overshoot, not percentages
    if PERCENT_THRESHOLD <= value <= 100.0:
        value = value / 100.0
    return min(max(value, 0.0), 1.0)


StrList = Annotated[List[str], BeforeValidator(_as_str_list)]
OptStr = Annotated[Optional[str], BeforeValidator(_as_optional_str)]
Confidence = Annotated[Optional[float], BeforeValidator(_coerce_confidence)]
Money = Optional[Union[int, float, str]]


class EvidenceKind(str, Enum):
    """Kind of media an evidence item carries."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"

    @classmethod
    def from_value(cls, value: Union[str, "EvidenceKind"]) -> "EvidenceKind":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        aliases = {"photo": "image", "picture": "image", "pdf": "document"}
        normalized = aliases.get(normalized, normalized)
        return cls(normalized)


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"


class _ModelPayload(BaseModel):
    """Base for blocks parsed from model output: camelCase in, free-form extras kept."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


# ── Detected objects ────────────────────────────────────

class VehicleDetection(_ModelPayload):
    type: OptStr = None
    make: OptStr = None
    model: OptStr = None
    year: Optional[Union[int, str]] = None
    color: OptStr = None
    position: OptStr = None
    damage: StrList = Field(default_factory=list)
    damage_severity: OptStr = None
    license_plate: OptStr = None
    estimated_speed: OptStr = None
    confidence: Confidence = None


class PersonDetection(_ModelPayload):
    position: OptStr = None
    location: OptStr = None
    injury_severity: OptStr = None
    injuries: StrList = Field(
        default_factory=list,
        validation_alias=AliasChoices("injuries", "apparentInjuries", "apparent_injuries"),
    )
    confidence: Confidence = None


class RoadSignDetection(_ModelPayload):
    type: OptStr = None
    text: OptStr = None
    relevance: OptStr = None
    confidence: Confidence = None


class RoadConditionDetection(_ModelPayload):
    type: OptStr = None
    severity: OptStr = None
    confidence: Confidence = None


class DetectedObjects(_ModelPayload):
    vehicles: Annotated[List[VehicleDetection], BeforeValidator(_as_list)] = Field(default_factory=list)
    persons: Annotated[List[PersonDetection], BeforeValidator(_as_list)] = Field(default_factory=list)
    road_signs: Annotated[List[RoadSignDetection], BeforeValidator(_as_list)] = Field(default_factory=list)
    road_conditions: Annotated[List[RoadConditionDetection], BeforeValidator(_as_list)] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.vehicles or self.persons or self.road_signs or self.road_conditions)


# ── Scene, damage, recommendations ──────────────────────

class SceneAnalysis(_ModelPayload):
    weather_conditions: StrList = Field(default_factory=list)
    road_conditions: StrList = Field(default_factory=list)
    lighting_conditions: OptStr = None
    road_type: OptStr = None
    traffic_flow: OptStr = None
    visibility: OptStr = None
    time_of_day: OptStr = None

    def is_empty(self) -> bool:
        return not any((
            self.weather_conditions,
            self.road_conditions,
            self.lighting_conditions,
            self.road_type,
            self.traffic_flow,
            self.visibility,
            self.time_of_day,
        ))


class VehicleDamage(_ModelPayload):
    vehicle_id: OptStr = None
    severity: OptStr = None
    areas: StrList = Field(default_factory=list)
    estimated_cost: Money = None
    description: OptStr = None


class PropertyDamage(_ModelPayload):
    type: OptStr = None
    severity: OptStr = None
    description: OptStr = None
    estimated_cost: Money = None


class DamageAssessment(_ModelPayload):
    vehicle_damage: Annotated[List[VehicleDamage], BeforeValidator(_as_list)] = Field(default_factory=list)
    property_damage: Annotated[List[PropertyDamage], BeforeValidator(_as_list)] = Field(default_factory=list)


class Recommendations(_ModelPayload):
    investigation_priority: OptStr = None
    additional_evidence_needed: StrList = Field(default_factory=list)
    expert_consultation: StrList = Field(default_factory=list)
    legal_implications: StrList = Field(default_factory=list)


class AnalysisResult(_ModelPayload):
    """Result body extracted from one raw model response."""
    confidence_score: Confidence = Field(
        default=None,
        validation_alias=AliasChoices("confidenceScore", "confidence_score", "confidence"),
    )
    detected_objects: DetectedObjects = Field(default_factory=DetectedObjects)
    scene_analysis: SceneAnalysis = Field(default_factory=SceneAnalysis)
    damage_assessment: DamageAssessment = Field(default_factory=DamageAssessment)
    recommendations: Recommendations = Field(default_factory=Recommendations)
    analysis_text: OptStr = None
    fallback: bool = Field(default=False, description="True when produced by keyword extraction")

    @model_validator(mode="before")
    @classmethod
    def drop_null_blocks(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


# ── Analysis record ─────────────────────────────────────

class AnalysisRecord(BaseModel):
    """One AI analysis attempt for one evidence item."""
    id: str
    evidence_id: str
    report_id: Optional[str] = None
    incident_id: Optional[str] = None
    analysis_type: EvidenceKind
    status: AnalysisStatus = AnalysisStatus.PENDING
    prompt: str
    media_locator: Optional[str] = None
    analysis_result: Optional[Dict[str, Any]] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    detected_objects: Optional[DetectedObjects] = None
    scene_analysis: Optional[SceneAnalysis] = None
    damage_assessment: Optional[DamageAssessment] = None
    recommendations: Optional[Recommendations] = None
    processing_time_ms: Optional[int] = None
    tokens_used: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_status_invariants(self) -> "AnalysisRecord":
        if self.status == AnalysisStatus.COMPLETED and self.confidence_score is None:
            raise ValueError("completed analysis requires a confidence score")
        if self.status == AnalysisStatus.FAILED and not self.error_message:
            raise ValueError("failed analysis requires an error message")
        return self

    def mark_processing(self) -> None:
        self.status = AnalysisStatus.PROCESSING
        self.updated_at = utcnow()

    def mark_retry(self) -> None:
        self.status = AnalysisStatus.RETRY
        self.updated_at = utcnow()

    def mark_completed(
        self,
        result: AnalysisResult,
        confidence: float,
        tokens_used: int,
        processing_time_ms: int,
    ) -> None:
        self.analysis_result = result.model_dump(mode="json", by_alias=True)
        self.confidence_score = confidence
        self.detected_objects = result.detected_objects
        self.scene_analysis = result.scene_analysis
        self.damage_assessment = result.damage_assessment
        self.recommendations = result.recommendations
        self.tokens_used = tokens_used
        self.processing_time_ms = processing_time_ms
        self.error_message = None
        self.status = AnalysisStatus.COMPLETED
        self.updated_at = utcnow()

    def mark_failed(self, error_message: str, processing_time_ms: Optional[int] = None) -> None:
        self.error_message = error_message or "Unknown error"
        if processing_time_ms is not None:
            self.processing_time_ms = processing_time_ms
        self.status = AnalysisStatus.FAILED
        self.updated_at = utcnow()


# ── Collaborator views ──────────────────────────────────

class Report(BaseModel):
    """View of a report owned by the report service."""
    id: str
    incident_id: str
    title: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)
    ai_contribution: Optional[int] = None
    ai_overall_confidence: Optional[float] = None
    ai_object_detection: Optional[float] = None
    ai_scene_reconstruction: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ReportAnalysisUpdate(BaseModel):
    """Changes pushed back to the report service after integrating an analysis."""
    content: Dict[str, Any]
    ai_contribution: int
    ai_overall_confidence: float
    ai_object_detection: float
    ai_scene_reconstruction: float
    updated_at: datetime = Field(default_factory=utcnow)


class EvidenceRef(BaseModel):
    """Minimal view of an evidence item owned by the evidence service."""
    id: str
    kind: EvidenceKind
    media_locator: str
    created_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_kind(cls, data: Any) -> Any:
        if isinstance(data, dict) and "kind" in data and not isinstance(data["kind"], EvidenceKind):
            data = {**data, "kind": EvidenceKind.from_value(data["kind"])}
        return data


class BatchItem(BaseModel):
    """One evidence item submitted to a batch analysis."""
    evidence_id: str
    kind: EvidenceKind
    media_locator: str
    prompt: Optional[str] = None


# ── Casualty report ─────────────────────────────────────

class ProcessingSummary(BaseModel):
    total_evidence: int = 0
    successfully_processed: int = 0
    failed_processing: int = 0
    overall_confidence: float = 0.0


class CasualtyEntry(BaseModel):
    position: str = "unknown"
    location: str = "unknown"
    injury_severity: str = "unknown"
    injuries: List[str] = Field(default_factory=lambda: ["unknown"])
    confidence: float = 0.5


class InjuryBreakdown(BaseModel):
    fatalities: int = 0
    serious_injuries: int = 0
    minor_injuries: int = 0


class CasualtyAssessment(BaseModel):
    total_casualties: int = 0
    casualties: List[CasualtyEntry] = Field(default_factory=list)
    injury_breakdown: InjuryBreakdown = Field(default_factory=InjuryBreakdown)

    @model_validator(mode="after")
    def check_total(self) -> "CasualtyAssessment":
        if self.total_casualties != len(self.casualties):
            raise ValueError("total_casualties must equal the number of casualties")
        return self


class VehicleEntry(BaseModel):
    type: str = "unknown"
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[Union[int, str]] = None
    color: Optional[str] = None
    damage: List[str] = Field(default_factory=list)
    damage_severity: str = "unknown"
    position: Optional[str] = None
    license_plate: Optional[str] = None
    estimated_speed: Optional[str] = None
    confidence: float = 0.5


class DamageSummary(BaseModel):
    vehicle_damage: List[VehicleDamage] = Field(default_factory=list)
    property_damage: List[PropertyDamage] = Field(default_factory=list)
    total_estimated_cost: str = "$0"


class VehicleAnalysis(BaseModel):
    total_vehicles: int = 0
    vehicles: List[VehicleEntry] = Field(default_factory=list)
    damage_assessment: DamageSummary = Field(default_factory=DamageSummary)

    @model_validator(mode="after")
    def check_total(self) -> "VehicleAnalysis":
        if self.total_vehicles != len(self.vehicles):
            raise ValueError("total_vehicles must equal the number of vehicles")
        return self


class EnvironmentalAnalysis(BaseModel):
    factors: List[str] = Field(default_factory=list)
    weather_conditions: List[str] = Field(default_factory=list)
    road_conditions: List[str] = Field(default_factory=list)
    lighting: str = "unknown"
    road_type: str = "unknown"
    traffic_flow: str = "unknown"


class TimelineEntry(BaseModel):
    time: datetime
    description: str
    source: str


class AIConfidence(BaseModel):
    overall: float = 0.0
    vehicle_detection: float = 0.0
    casualty_assessment: float = 0.0
    scene_reconstruction: float = 0.0


class CasualtyReport(BaseModel):
    """Synthesized casualty report, one per source report."""
    id: str
    report_id: str
    incident_id: str
    generated_at: datetime = Field(default_factory=utcnow)
    processing_summary: ProcessingSummary = Field(default_factory=ProcessingSummary)
    casualty_assessment: CasualtyAssessment = Field(default_factory=CasualtyAssessment)
    vehicle_analysis: VehicleAnalysis = Field(default_factory=VehicleAnalysis)
    environmental_analysis: EnvironmentalAnalysis = Field(default_factory=EnvironmentalAnalysis)
    incident_timeline: List[TimelineEntry] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    ai_confidence: AIConfidence = Field(default_factory=AIConfidence)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_timeline_sorted(self) -> "CasualtyReport":
        times = [entry.time for entry in self.incident_timeline]
        if times != sorted(times):
            raise ValueError("incident_timeline must be sorted ascending by time")
        return self


class CasualtyReportPage(BaseModel):
    items: List[CasualtyReport] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10
    total_pages: int = 0


class SynthesisPath(str, Enum):
    """Which branch a casualty report synthesis took."""
    HAS_EXISTING_ANALYSES = "reused"
    NEEDS_COLD_START = "cold_start"


class SynthesisResult(BaseModel):
    path: SynthesisPath
    evidence_count: int
    analysis_count: int
    report: CasualtyReport

    @property
    def reused(self) -> bool:
        return self.path == SynthesisPath.HAS_EXISTING_ANALYSES


# ── Report enhancement views ────────────────────────────

class RecommendationSet(BaseModel):
    investigation: List[str] = Field(default_factory=list)
    safety: List[str] = Field(default_factory=list)
    legal: List[str] = Field(default_factory=list)
    technical: List[str] = Field(default_factory=list)
    priority: str = "medium"


class SceneValueSets(BaseModel):
    weather_conditions: List[str] = Field(default_factory=list)
    lighting_conditions: List[str] = Field(default_factory=list)
    road_type: List[str] = Field(default_factory=list)
    traffic_flow: List[str] = Field(default_factory=list)
    visibility: List[str] = Field(default_factory=list)


class ConfidenceAnalysis(BaseModel):
    average_confidence: float = 0.0
    high_confidence_count: int = 0
    medium_confidence_count: int = 0
    low_confidence_count: int = 0
    total_analyses: int = 0


class ReportEnhancement(BaseModel):
    report_id: str
    ai_contribution: int = 0
    overall_confidence: float = 0.0
    object_detection_score: float = 0.0
    scene_reconstruction_score: float = 0.0
    executive_summary: str = ""
    vehicle_analysis: List[VehicleDetection] = Field(default_factory=list)
    scene_analysis: SceneValueSets = Field(default_factory=SceneValueSets)
    damage_assessment: DamageSummary = Field(default_factory=DamageSummary)
    recommendations: RecommendationSet = Field(default_factory=RecommendationSet)
    confidence_analysis: ConfidenceAnalysis = Field(default_factory=ConfidenceAnalysis)
    generated_at: datetime = Field(default_factory=utcnow)


class IncidentFindings(BaseModel):
    overall_confidence: float = 0.0
    vehicle_count: int = 0
    person_count: int = 0
    weather_conditions: List[str] = Field(default_factory=list)
    road_conditions: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    evidence_types: List[str] = Field(default_factory=list)


class IncidentSummary(BaseModel):
    incident_id: str
    summary: str
    analysis_count: int
    overall_confidence: float
    key_findings: IncidentFindings
    recommendations: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


# ── AI conversations ────────────────────────────────────

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Attachment(BaseModel):
    type: str
    url: str
    description: Optional[str] = None


class ConversationMessage(BaseModel):
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    tokens_used: Optional[int] = None
    processing_time_ms: Optional[int] = None
    attachments: List[Attachment] = Field(default_factory=list)


class ConversationContext(BaseModel):
    """What the assistant is told about the report when a conversation starts."""
    report_id: str
    incident_id: str
    evidence_ids: List[str] = Field(default_factory=list)
    focus_areas: List[str] = Field(default_factory=list)
    analysis_goals: List[str] = Field(default_factory=list)
    report_summary: str = ""
    evidence_summary: str = ""


class ConversationSummary(_ModelPayload):
    key_findings: StrList = Field(default_factory=list)
    recommendations: StrList = Field(default_factory=list)
    confidence_level: Confidence = None
    areas_of_concern: StrList = Field(default_factory=list)
    next_steps: StrList = Field(default_factory=list)
    summary: OptStr = None


class Conversation(BaseModel):
    """An investigator's chat with the model about one report."""
    id: str
    report_id: str
    user_id: str
    title: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    messages: List[ConversationMessage] = Field(default_factory=list)
    context: ConversationContext
    summary: Optional[ConversationSummary] = None
    total_tokens_used: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def system_prompt(self) -> Optional[str]:
        for message in self.messages:
            if message.role == MessageRole.SYSTEM:
                return message.content
        return None

    def add_message(self, message: ConversationMessage) -> None:
        self.messages.append(message)
        self.total_tokens_used += message.tokens_used or 0
        self.updated_at = utcnow()


class MessageExchange(BaseModel):
    conversation_id: str
    user_message: ConversationMessage
    ai_response: ConversationMessage
    total_tokens_used: int
