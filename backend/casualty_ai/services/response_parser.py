"""
Parser that turns a raw model response into a typed AnalysisResult.

The model is asked for JSON but returns free text often enough that parsing
must degrade instead of fail: the first balanced {...} block is parsed
strictly, and when that is impossible the text is mined against fixed
keyword vocabularies. parse() never raises.
"""
import json
import logging
import re
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from casualty_ai.models.schemas import (
    AnalysisResult,
    DamageAssessment,
    DetectedObjects,
    EvidenceKind,
    PersonDetection,
    PropertyDamage,
    Recommendations,
    RoadConditionDetection,
    RoadSignDetection,
    SceneAnalysis,
    VehicleDamage,
    VehicleDetection,
)

logger = logging.getLogger(__name__)

KEYWORD_CONFIDENCE = 0.7
NO_KEYWORD_CONFIDENCE = 0.6

VEHICLE_CONFIDENCE = 0.8
PERSON_CONFIDENCE = 0.7
ROAD_SIGN_CONFIDENCE = 0.6
ROAD_CONDITION_CONFIDENCE = 0.6

# Longer phrases first so "stop sign" wins over "sign".
VEHICLE_TERMS = ["motorcycle", "vehicle", "bicycle", "truck", "car", "bus", "van", "suv"]
PERSON_TERMS = ["pedestrian", "passenger", "cyclist", "person", "people", "driver"]
ROAD_SIGN_TERMS = ["traffic light", "stop sign", "signal", "sign"]
ROAD_CONDITION_TERMS = ["construction", "pothole", "debris", "icy", "wet"]
WEATHER_TERMS = ["cloudy", "sunny", "storm", "clear", "rain", "snow", "fog"]
LIGHTING_TERMS = ["artificial light", "daylight", "night", "dawn", "dusk"]
ROAD_TYPE_TERMS = ["parking lot", "intersection", "residential", "highway", "street"]
TRAFFIC_FLOW_TERMS = ["heavy traffic", "light traffic", "free flowing", "congested"]
DAMAGE_TERMS = ["shattered", "scratch", "cracked", "broken", "damage", "dent"]
PROPERTY_TERMS = ["guardrail", "building", "barrier", "fence", "pole", "tree"]
EVIDENCE_TERMS = ["measurements", "witness", "camera", "photos", "samples"]
EXPERT_TERMS = ["forensic", "engineer", "medical", "legal"]
LEGAL_TERMS = ["negligence", "liability", "violation", "citation"]
HIGH_PRIORITY_TERMS = ["urgent", "critical", "severe"]
MEDIUM_PRIORITY_TERMS = ["moderate", "standard"]


def _term_pattern(terms: List[str]) -> re.Pattern:
    alternation = "|".join(re.escape(t) for t in terms)
    return re.compile(rf"\b({alternation})(?:s|es)?\b", re.IGNORECASE)


_PATTERNS: Dict[str, re.Pattern] = {
    name: _term_pattern(terms)
    for name, terms in {
        "vehicles": VEHICLE_TERMS,
        "persons": PERSON_TERMS,
        "road_signs": ROAD_SIGN_TERMS,
        "road_conditions": ROAD_CONDITION_TERMS,
        "weather": WEATHER_TERMS,
        "lighting": LIGHTING_TERMS,
        "road_type": ROAD_TYPE_TERMS,
        "traffic_flow": TRAFFIC_FLOW_TERMS,
        "damage": DAMAGE_TERMS,
        "property": PROPERTY_TERMS,
        "evidence": EVIDENCE_TERMS,
        "experts": EXPERT_TERMS,
        "legal": LEGAL_TERMS,
        "high_priority": HIGH_PRIORITY_TERMS,
        "medium_priority": MEDIUM_PRIORITY_TERMS,
    }.items()
}


def find_balanced_json_block(text: str) -> Optional[str]:
    """Return the first balanced {...} substring, honoring JSON string literals.

    Single pass: open positions sit on a stack, and the block with the
    smallest opening index among all matched pairs wins.
    """
    if not text:
        return None
    start = text.find("{")
    if start == -1:
        return None

    stack: List[int] = []
    best: Optional[Tuple[int, int]] = None
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            stack.append(i)
        elif ch == "}" and stack:
            opened = stack.pop()
            if not stack:
                # Nothing older is still open, so no later pair can start earlier
                return text[opened:i + 1]
            if best is None or opened < best[0]:
                best = (opened, i)
    if best is None:
        return None
    return text[best[0]:best[1] + 1]


def extract_terms(text: str, category: str) -> List[str]:
    """Case-insensitive keyword matches for a vocabulary, lower-cased and deduplicated."""
    if not text:
        return []
    seen: List[str] = []
    for match in _PATTERNS[category].finditer(text):
        term = match.group(1).lower()
        if term not in seen:
            seen.append(term)
    return seen


def _first_term(text: str, category: str) -> str:
    terms = extract_terms(text, category)
    return terms[0] if terms else "unknown"


class ResponseParser:
    """Strict JSON parsing with a keyword-mining fallback."""

    def parse(self, text: Optional[str], kind: EvidenceKind) -> AnalysisResult:
        """Parse a raw model response for an evidence item of the given kind."""
        text = text or ""
        structured, reason = self._parse_structured(text)
        if structured is not None:
            return structured

        logger.warning(
            f"Falling back to keyword extraction for {EvidenceKind.from_value(kind).value} "
            f"response ({reason})"
        )
        return self._parse_fallback(text)

    def _parse_structured(self, text: str) -> Tuple[Optional[AnalysisResult], str]:
        block = find_balanced_json_block(text)
        if block is None:
            return None, "no JSON object found"
        try:
            data = json.loads(block)
        except json.JSONDecodeError as e:
            return None, f"invalid JSON: {e.msg}"
        except (ValueError, RecursionError) as e:
            # Deep nesting overflows the decoder; oversized numbers raise ValueError
            return None, f"undecodable JSON: {type(e).__name__}"
        if not isinstance(data, dict):
            return None, "JSON block is not an object"
        try:
            result = AnalysisResult.model_validate(data)
        except ValidationError as e:
            return None, f"unexpected shape: {e.error_count()} validation error(s)"
        except (ValueError, RecursionError) as e:
            return None, f"unexpected shape: {type(e).__name__}"
        result.fallback = False
        return result, ""

    def _parse_fallback(self, text: str) -> AnalysisResult:
        detected = self.extract_detected_objects(text)
        scene = self.extract_scene_analysis(text)
        damage = self.extract_damage_assessment(text)
        recommendations = self.extract_recommendations(text)

        found_keywords = any((
            not detected.is_empty(),
            scene.weather_conditions,
            scene.lighting_conditions != "unknown",
            scene.road_type != "unknown",
            scene.traffic_flow != "unknown",
            damage.vehicle_damage,
            damage.property_damage,
            recommendations.additional_evidence_needed,
            recommendations.expert_consultation,
            recommendations.legal_implications,
        ))

        return AnalysisResult(
            confidence_score=KEYWORD_CONFIDENCE if found_keywords else NO_KEYWORD_CONFIDENCE,
            detected_objects=detected,
            scene_analysis=scene,
            damage_assessment=damage,
            recommendations=recommendations,
            analysis_text=text or None,
            fallback=True,
        )

    def extract_detected_objects(self, text: str) -> DetectedObjects:
        return DetectedObjects(
            vehicles=[
                VehicleDetection(type=term, confidence=VEHICLE_CONFIDENCE)
                for term in extract_terms(text, "vehicles")
            ],
            persons=[
                PersonDetection(position=term, confidence=PERSON_CONFIDENCE)
                for term in extract_terms(text, "persons")
            ],
            road_signs=[
                RoadSignDetection(type=term, confidence=ROAD_SIGN_CONFIDENCE)
                for term in extract_terms(text, "road_signs")
            ],
            road_conditions=[
                RoadConditionDetection(type=term, severity="unknown", confidence=ROAD_CONDITION_CONFIDENCE)
                for term in extract_terms(text, "road_conditions")
            ],
        )

    def extract_scene_analysis(self, text: str) -> SceneAnalysis:
        return SceneAnalysis(
            weather_conditions=extract_terms(text, "weather"),
            lighting_conditions=_first_term(text, "lighting"),
            road_type=_first_term(text, "road_type"),
            traffic_flow=_first_term(text, "traffic_flow"),
        )

    def extract_damage_assessment(self, text: str) -> DamageAssessment:
        return DamageAssessment(
            vehicle_damage=[
                VehicleDamage(
                    severity="moderate",
                    areas=[term],
                    estimated_cost="$0",
                    description=f"{term} detected in analysis",
                )
                for term in extract_terms(text, "damage")
            ],
            property_damage=[
                PropertyDamage(
                    type=term,
                    severity="minor",
                    description=f"{term} damage detected",
                    estimated_cost="$0",
                )
                for term in extract_terms(text, "property")
            ],
        )

    def extract_recommendations(self, text: str) -> Recommendations:
        if extract_terms(text, "high_priority"):
            priority = "high"
        elif extract_terms(text, "medium_priority"):
            priority = "medium"
        else:
            priority = "low"
        return Recommendations(
            investigation_priority=priority,
            additional_evidence_needed=extract_terms(text, "evidence"),
            expert_consultation=extract_terms(text, "experts"),
            legal_implications=extract_terms(text, "legal"),
        )


# Global parser instance
response_parser = ResponseParser()
