"""
Aggregator: folds many per-evidence AnalysisRecords into one view.

Shared by casualty report synthesis and report enhancement, so every score
(overall, object detection, casualty, scene reconstruction) and every merge
rule is computed in one place. Pure and synchronous: no I/O happens here.

Detections are concatenated across records without identity matching, so a
vehicle seen in two photos appears twice. Only flat string lists are
deduplicated.
"""
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from casualty_ai.models.schemas import (
    AnalysisRecord,
    CasualtyEntry,
    ConfidenceAnalysis,
    DamageSummary,
    EvidenceRef,
    InjuryBreakdown,
    PersonDetection,
    PropertyDamage,
    RecommendationSet,
    SceneAnalysis,
    SceneValueSets,
    TimelineEntry,
    VehicleDamage,
    VehicleDetection,
    VehicleEntry,
)
from casualty_ai.services.stores import as_utc

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

# Scene completeness checklists
CASUALTY_SCENE_FACTORS: Tuple[str, ...] = (
    "weather_conditions",
    "lighting_conditions",
    "road_type",
    "traffic_flow",
    "visibility",
)
ENHANCEMENT_SCENE_FACTORS: Tuple[str, ...] = CASUALTY_SCENE_FACTORS + ("time_of_day",)

DETECTION_CATEGORIES = ("vehicles", "persons", "road_signs")

PRIORITY_RANK = {"low": 1, "medium": 2, "high": 3, "critical": 4}

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6

DEFAULT_ITEM_CONFIDENCE = 0.5

FATAL_TERMS = ("fatal", "fatality", "deceased", "dead", "killed", "death")
SERIOUS_TERMS = ("serious", "severe", "critical", "major", "life-threatening")
MINOR_TERMS = ("minor", "moderate", "slight", "light", "superficial")


# ── Small helpers ──────────────────────────────────────

def is_known(value: Any) -> bool:
    """True for a non-empty value that is not the literal 'unknown'."""
    if value is None:
        return False
    if isinstance(value, (list, tuple, set)):
        return any(is_known(v) for v in value)
    text = str(value).strip()
    return bool(text) and text.lower() != UNKNOWN


def dedupe(values: Iterable[str]) -> List[str]:
    """Order-preserving, case-preserving set of the known values."""
    seen: Dict[str, None] = {}
    for value in values:
        if is_known(value) and value not in seen:
            seen[value] = None
    return list(seen)


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def most_common(values: Iterable[Optional[str]]) -> str:
    """Most frequent known value; ties go to the value seen first."""
    counts: Dict[str, int] = {}
    for value in values:
        if is_known(value):
            counts[value] = counts.get(value, 0) + 1
    if not counts:
        return UNKNOWN
    return max(counts, key=counts.get)


def _item_confidence(item: Any) -> float:
    confidence = getattr(item, "confidence", None)
    return confidence if confidence is not None else 0.0


def _text_or_unknown(value: Optional[str]) -> str:
    return value if is_known(value) else UNKNOWN


# ── Money ──────────────────────────────────────────────

def parse_cost(value: Any) -> int:
    """Whole dollars from "$1,200", "1200.50" or 1200; anything else is 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        text = str(value).replace("$", "").replace(",", "").strip()
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return 0
    if not amount.is_finite() or amount < 0:
        return 0
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_cost(total: int) -> str:
    return f"${total:,}"


def total_estimated_cost(
    vehicle_damage: Sequence[VehicleDamage],
    property_damage: Sequence[PropertyDamage],
) -> str:
    total = sum(parse_cost(d.estimated_cost) for d in vehicle_damage)
    total += sum(parse_cost(d.estimated_cost) for d in property_damage)
    return format_cost(total)


# ── Scores ─────────────────────────────────────────────

def overall_confidence(records: Sequence[AnalysisRecord]) -> float:
    """Mean of present confidence scores, 0 when none are present."""
    return mean([r.confidence_score for r in records if r.confidence_score is not None])


def record_detection_score(record: AnalysisRecord) -> Optional[float]:
    """Mean of per-category mean confidences; None when nothing was detected."""
    detected = record.detected_objects
    if detected is None:
        return None
    category_means = []
    for category in DETECTION_CATEGORIES:
        items = getattr(detected, category)
        if items:
            category_means.append(mean([_item_confidence(i) for i in items]))
    if not category_means:
        return None
    return mean(category_means)


def object_detection_score(records: Sequence[AnalysisRecord]) -> float:
    scores = [record_detection_score(r) for r in records]
    return mean([s for s in scores if s is not None])


def casualty_confidence(records: Sequence[AnalysisRecord]) -> float:
    """Mean over records reporting persons of their mean person confidence."""
    scores = []
    for record in records:
        persons = record.detected_objects.persons if record.detected_objects else []
        if persons:
            scores.append(mean([_item_confidence(p) for p in persons]))
    return mean(scores)


def scene_completeness(scene: SceneAnalysis, factors: Sequence[str]) -> float:
    """Fraction of checklist factors populated with a known value."""
    if not factors:
        return 0.0
    populated = sum(1 for factor in factors if is_known(getattr(scene, factor, None)))
    return populated / len(factors)


def scene_reconstruction_score(
    records: Sequence[AnalysisRecord],
    factors: Sequence[str] = CASUALTY_SCENE_FACTORS,
) -> float:
    scores = [
        scene_completeness(r.scene_analysis, factors)
        for r in records
        if r.scene_analysis is not None and not r.scene_analysis.is_empty()
    ]
    return mean(scores)


def confidence_analysis(records: Sequence[AnalysisRecord]) -> ConfidenceAnalysis:
    scores = [r.confidence_score for r in records if r.confidence_score is not None]
    return ConfidenceAnalysis(
        average_confidence=mean(scores),
        high_confidence_count=sum(1 for s in scores if s >= HIGH_CONFIDENCE),
        medium_confidence_count=sum(1 for s in scores if MEDIUM_CONFIDENCE <= s < HIGH_CONFIDENCE),
        low_confidence_count=sum(1 for s in scores if s < MEDIUM_CONFIDENCE),
        total_analyses=len(records),
    )


def highest_priority(priorities: Iterable[Optional[str]], default: str = "medium") -> str:
    """Highest of low < medium < high < critical; unrecognized values are ignored."""
    best = None
    for priority in priorities:
        key = (priority or "").strip().lower()
        if key in PRIORITY_RANK and (best is None or PRIORITY_RANK[key] > PRIORITY_RANK[best]):
            best = key
    return best or default


# ── Normalization ──────────────────────────────────────

def normalize_vehicle(vehicle: VehicleDetection) -> VehicleEntry:
    return VehicleEntry(
        type=_text_or_unknown(vehicle.type),
        make=vehicle.make,
        model=vehicle.model,
        year=vehicle.year,
        color=vehicle.color,
        damage=list(vehicle.damage),
        damage_severity=_text_or_unknown(vehicle.damage_severity),
        position=vehicle.position,
        license_plate=vehicle.license_plate,
        estimated_speed=vehicle.estimated_speed,
        confidence=vehicle.confidence if vehicle.confidence is not None else DEFAULT_ITEM_CONFIDENCE,
    )


def normalize_person(person: PersonDetection) -> CasualtyEntry:
    return CasualtyEntry(
        position=_text_or_unknown(person.position),
        location=_text_or_unknown(person.location),
        injury_severity=_text_or_unknown(person.injury_severity),
        injuries=list(person.injuries) or [UNKNOWN],
        confidence=person.confidence if person.confidence is not None else DEFAULT_ITEM_CONFIDENCE,
    )


def _matches_any(text: str, terms: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(term in lowered for term in terms)


def classify_injury(casualty: CasualtyEntry) -> Optional[str]:
    """'fatal', 'serious', 'minor' or None, from severity then injury descriptions."""
    candidates = [casualty.injury_severity] + list(casualty.injuries)
    for text in candidates:
        if not is_known(text):
            continue
        if _matches_any(text, FATAL_TERMS):
            return "fatal"
        if _matches_any(text, SERIOUS_TERMS):
            return "serious"
        if _matches_any(text, MINOR_TERMS):
            return "minor"
    return None


def injury_breakdown(casualties: Sequence[CasualtyEntry]) -> InjuryBreakdown:
    breakdown = InjuryBreakdown()
    for casualty in casualties:
        category = classify_injury(casualty)
        if category == "fatal":
            breakdown.fatalities += 1
        elif category == "serious":
            breakdown.serious_injuries += 1
        elif category == "minor":
            breakdown.minor_injuries += 1
    return breakdown


def count_unique_vehicles(records: Sequence[AnalysisRecord]) -> int:
    """Distinct (type, color) pairs across records."""
    keys = set()
    for record in records:
        if record.detected_objects:
            for vehicle in record.detected_objects.vehicles:
                keys.add((vehicle.type, vehicle.color))
    return len(keys)


def count_unique_persons(records: Sequence[AnalysisRecord]) -> int:
    """Distinct person positions across records."""
    keys = set()
    for record in records:
        if record.detected_objects:
            for person in record.detected_objects.persons:
                keys.add(person.position)
    return len(keys)


# ── Timeline ───────────────────────────────────────────

def build_timeline(evidence: Sequence[EvidenceRef]) -> List[TimelineEntry]:
    """One entry per timestamped evidence item, ascending by time."""
    entries = [
        TimelineEntry(
            time=as_utc(item.created_at),
            description=f"{item.kind.value.capitalize()} evidence recorded",
            source=item.media_locator,
        )
        for item in evidence
        if item.created_at is not None
    ]
    entries.sort(key=lambda entry: entry.time)
    return entries


# ── Aggregate view ─────────────────────────────────────

@dataclass
class AggregateView:
    """Everything downstream report builders need from a set of analyses."""
    record_count: int = 0
    overall_confidence: float = 0.0
    object_detection_score: float = 0.0
    casualty_confidence: float = 0.0
    scene_reconstruction_score: float = 0.0
    vehicles: List[VehicleEntry] = field(default_factory=list)
    casualties: List[CasualtyEntry] = field(default_factory=list)
    injury_breakdown: InjuryBreakdown = field(default_factory=InjuryBreakdown)
    damage: DamageSummary = field(default_factory=DamageSummary)
    weather_conditions: List[str] = field(default_factory=list)
    road_conditions: List[str] = field(default_factory=list)
    lighting: str = UNKNOWN
    road_type: str = UNKNOWN
    traffic_flow: str = UNKNOWN
    environmental_factors: List[str] = field(default_factory=list)
    additional_evidence_needed: List[str] = field(default_factory=list)
    expert_consultation: List[str] = field(default_factory=list)
    legal_implications: List[str] = field(default_factory=list)
    investigation_priority: str = "medium"
    evidence_types: List[str] = field(default_factory=list)
    max_vehicle_count: int = 0
    max_person_count: int = 0
    timeline: List[TimelineEntry] = field(default_factory=list)

    @property
    def recommendations(self) -> List[str]:
        return dedupe(
            self.additional_evidence_needed + self.expert_consultation + self.legal_implications
        )


class Aggregator:
    """Folds AnalysisRecords into an AggregateView."""

    def aggregate(
        self,
        records: Sequence[AnalysisRecord],
        evidence: Optional[Sequence[EvidenceRef]] = None,
        scene_factors: Sequence[str] = CASUALTY_SCENE_FACTORS,
    ) -> AggregateView:
        vehicles: List[VehicleEntry] = []
        casualties: List[CasualtyEntry] = []
        vehicle_damage: List[VehicleDamage] = []
        property_damage: List[PropertyDamage] = []
        weather: List[str] = []
        road_conditions: List[str] = []
        lighting: List[Optional[str]] = []
        road_types: List[Optional[str]] = []
        traffic: List[Optional[str]] = []
        factors: List[str] = []
        evidence_needed: List[str] = []
        experts: List[str] = []
        legal: List[str] = []
        priorities: List[Optional[str]] = []
        evidence_types: List[str] = []
        max_vehicles = 0
        max_persons = 0

        for record in records:
            evidence_types.append(record.analysis_type.value)
            detected = record.detected_objects
            if detected is not None:
                vehicles.extend(normalize_vehicle(v) for v in detected.vehicles)
                casualties.extend(normalize_person(p) for p in detected.persons)
                road_conditions.extend(c.type for c in detected.road_conditions if c.type)
                max_vehicles = max(max_vehicles, len(detected.vehicles))
                max_persons = max(max_persons, len(detected.persons))

            scene = record.scene_analysis
            if scene is not None:
                weather.extend(scene.weather_conditions)
                road_conditions.extend(scene.road_conditions)
                lighting.append(scene.lighting_conditions)
                road_types.append(scene.road_type)
                traffic.append(scene.traffic_flow)
                factors.extend(scene.weather_conditions)
                factors.extend(scene.road_conditions)
                factors.extend(
                    v for v in (scene.lighting_conditions, scene.visibility, scene.traffic_flow) if v
                )

            damage = record.damage_assessment
            if damage is not None:
                vehicle_damage.extend(d.model_copy() for d in damage.vehicle_damage)
                property_damage.extend(d.model_copy() for d in damage.property_damage)

            recs = record.recommendations
            if recs is not None:
                evidence_needed.extend(recs.additional_evidence_needed)
                experts.extend(recs.expert_consultation)
                legal.extend(recs.legal_implications)
                priorities.append(recs.investigation_priority)

        factors.extend(road_conditions)

        view = AggregateView(
            record_count=len(records),
            overall_confidence=overall_confidence(records),
            object_detection_score=object_detection_score(records),
            casualty_confidence=casualty_confidence(records),
            scene_reconstruction_score=scene_reconstruction_score(records, scene_factors),
            vehicles=vehicles,
            casualties=casualties,
            injury_breakdown=injury_breakdown(casualties),
            damage=DamageSummary(
                vehicle_damage=vehicle_damage,
                property_damage=property_damage,
                total_estimated_cost=total_estimated_cost(vehicle_damage, property_damage),
            ),
            weather_conditions=dedupe(weather),
            road_conditions=dedupe(road_conditions),
            lighting=most_common(lighting),
            road_type=most_common(road_types),
            traffic_flow=most_common(traffic),
            environmental_factors=dedupe(factors),
            additional_evidence_needed=dedupe(evidence_needed),
            expert_consultation=dedupe(experts),
            legal_implications=dedupe(legal),
            investigation_priority=highest_priority(priorities),
            evidence_types=dedupe(evidence_types),
            max_vehicle_count=max_vehicles,
            max_person_count=max_persons,
            timeline=build_timeline(evidence or []),
        )
        logger.debug(
            f"Aggregated {view.record_count} analyses: {len(view.vehicles)} vehicles, "
            f"{len(view.casualties)} casualties, confidence {view.overall_confidence:.2f}"
        )
        return view

    def scene_value_sets(self, records: Sequence[AnalysisRecord]) -> SceneValueSets:
        """Distinct observed values per scene field."""
        values: Dict[str, List[str]] = {name: [] for name in SceneValueSets.model_fields}
        for record in records:
            scene = record.scene_analysis
            if scene is None:
                continue
            for name in values:
                value = getattr(scene, name, None)
                if isinstance(value, list):
                    values[name].extend(value)
                elif value:
                    values[name].append(value)
        return SceneValueSets(**{name: dedupe(v) for name, v in values.items()})

    def recommendation_set(self, records: Sequence[AnalysisRecord]) -> RecommendationSet:
        view = self.aggregate(records)
        return RecommendationSet(
            investigation=view.additional_evidence_needed,
            technical=view.expert_consultation,
            legal=view.legal_implications,
            priority=view.investigation_priority,
        )

    @staticmethod
    def raw_vehicles(records: Sequence[AnalysisRecord]) -> List[VehicleDetection]:
        vehicles = []
        for record in records:
            if record.detected_objects:
                vehicles.extend(v.model_copy() for v in record.detected_objects.vehicles)
        return vehicles


# Global aggregator instance
aggregator = Aggregator()
