"""Prompts for evidence analysis, incident summaries and investigator conversations.

Every evidence prompt asks the model for one JSON object with the same five
top-level blocks so a single parser can read any of them:
confidenceScore, detectedObjects, sceneAnalysis, damageAssessment, recommendations.
"""
from typing import List

from casualty_ai.models.schemas import (
    ConversationContext,
    ConversationMessage,
    EvidenceKind,
    IncidentFindings,
    MessageRole,
)

ANALYST_PREAMBLE = """You are an expert traffic accident investigator reviewing evidence from a road incident.
Report only what the evidence supports. When something cannot be determined, use "unknown" instead of guessing.
Return ONE JSON object and nothing else (no markdown fences, no commentary)."""

RESULT_SCHEMA = """{
  "confidenceScore": 0.0-1.0,
  "detectedObjects": {
    "vehicles": [
      {
        "type": "car|truck|motorcycle|bus|van|suv|bicycle|other",
        "make": "manufacturer or null",
        "model": "model name or null",
        "year": "model year or null",
        "color": "vehicle color",
        "position": "where the vehicle is relative to the scene",
        "damage": ["front", "rear", "left_side", "right_side", "roof", "none"],
        "damageSeverity": "none|minor|moderate|severe|totaled",
        "licensePlate": "plate text or null",
        "estimatedSpeed": "low|medium|high|unknown",
        "confidence": 0.0-1.0
      }
    ],
    "persons": [
      {
        "position": "driver|passenger|pedestrian|cyclist|bystander",
        "location": "inside vehicle|outside vehicle|on road|sidewalk",
        "injurySeverity": "none|minor|moderate|serious|critical|fatal|unknown",
        "injuries": ["short description of each visible or reported injury"],
        "confidence": 0.0-1.0
      }
    ],
    "roadSigns": [
      {"type": "stop|yield|speed_limit|traffic_light|warning|other", "text": "sign text if readable", "relevance": "high|medium|low", "confidence": 0.0-1.0}
    ],
    "roadConditions": [
      {"type": "wet|dry|icy|construction|debris|potholes|normal", "severity": "minor|moderate|severe", "confidence": 0.0-1.0}
    ]
  },
  "sceneAnalysis": {
    "weatherConditions": ["clear", "rain", "snow", "fog", "storm"],
    "lightingConditions": "daylight|dawn|dusk|night|artificial",
    "roadType": "highway|city_street|residential|intersection|parking_lot|rural",
    "trafficFlow": "heavy|moderate|light|stopped|unknown",
    "visibility": "excellent|good|poor|very_poor",
    "timeOfDay": "morning|afternoon|evening|night|unknown"
  },
  "damageAssessment": {
    "vehicleDamage": [
      {"vehicleId": "reference to a vehicle above", "severity": "minor|moderate|severe|totaled", "areas": ["front", "rear"], "estimatedCost": "$<whole dollars> or $0 when unknown"}
    ],
    "propertyDamage": [
      {"type": "barrier|fence|sign|building|tree|other", "severity": "minor|moderate|severe", "description": "what was damaged", "estimatedCost": "$<whole dollars> or $0 when unknown"}
    ]
  },
  "recommendations": {
    "investigationPriority": "low|medium|high|critical",
    "additionalEvidenceNeeded": ["witness_statements", "vehicle_inspection", "road_measurements", "medical_records", "security_footage"],
    "expertConsultation": ["accident_reconstruction", "medical", "engineering", "legal"],
    "legalImplications": ["traffic_violation", "negligence", "equipment_failure", "environmental_factors"]
  }
}"""

IMAGE_FOCUS = """This evidence is a PHOTO of the incident. Examine:
1. Every vehicle: type, color, position, visible damage and its severity
2. Every person: role, location and any visible injury
3. Traffic signs, signals and lane markings
4. Road surface, weather and lighting
5. Impact points, debris fields and skid marks
Rate confidence per observation based on how clearly it is visible."""

VIDEO_FOCUS = """This evidence is a VIDEO of the incident. Examine:
1. The sequence of events before, during and after the impact
2. Vehicle movements, lane positions, braking and approximate speeds
3. Driver and pedestrian behavior
4. Traffic flow and environmental conditions over time
5. People involved and their condition after the impact
Mention timestamps (seconds into the video) inside descriptions where useful."""

AUDIO_FOCUS = """This evidence is an AUDIO recording related to the incident. Listen for:
1. Impact, glass breaking and scraping sounds
2. Engine acceleration, braking and tire noise
3. Sirens and emergency response
4. Voices: witness statements, calls for help, reports of injuries
5. Weather and traffic sounds
Only list vehicles or persons that the audio gives direct evidence of."""

DOCUMENT_FOCUS = """This evidence is a DOCUMENT (police report, witness statement, medical or insurance record). Extract:
1. Incident date, time, location, weather and road conditions as stated
2. Parties involved, their roles and reported injuries
3. Vehicle make, model, year, plate and described damage
4. Cited violations, stated causes and legal implications
5. Missing information that should be collected next
Report the document's statements, flagging inconsistencies under recommendations."""

CASUALTY_FOCUS = """This evidence is being analyzed to build a CASUALTY REPORT. Prioritize:
1. Every injured or potentially injured person: role, location, injury severity and specific injuries
2. Every vehicle involved: type, make/model/year/color, damage areas, severity, plate and speed estimate
3. Dollar estimates for vehicle and property damage (use "$0" when no estimate is possible)
4. Environmental factors that contributed to the incident
5. Follow-up evidence, experts and legal implications needed for the casualty investigation
If the evidence shows no people, return an empty persons list rather than inventing casualties."""

_KIND_FOCUS = {
    EvidenceKind.IMAGE: IMAGE_FOCUS,
    EvidenceKind.VIDEO: VIDEO_FOCUS,
    EvidenceKind.AUDIO: AUDIO_FOCUS,
    EvidenceKind.DOCUMENT: DOCUMENT_FOCUS,
}


def _compose(focus: str) -> str:
    return f"""{ANALYST_PREAMBLE}

{focus}

Respond with JSON in exactly this structure:
{RESULT_SCHEMA}"""


IMAGE_ANALYSIS_PROMPT = _compose(IMAGE_FOCUS)
VIDEO_ANALYSIS_PROMPT = _compose(VIDEO_FOCUS)
AUDIO_ANALYSIS_PROMPT = _compose(AUDIO_FOCUS)
DOCUMENT_ANALYSIS_PROMPT = _compose(DOCUMENT_FOCUS)
CASUALTY_ANALYSIS_PROMPT = _compose(CASUALTY_FOCUS)

DEFAULT_PROMPTS = {
    EvidenceKind.IMAGE: IMAGE_ANALYSIS_PROMPT,
    EvidenceKind.VIDEO: VIDEO_ANALYSIS_PROMPT,
    EvidenceKind.AUDIO: AUDIO_ANALYSIS_PROMPT,
    EvidenceKind.DOCUMENT: DOCUMENT_ANALYSIS_PROMPT,
}


def get_default_prompt(kind: EvidenceKind) -> str:
    """Return the kind-specific analysis prompt."""
    return DEFAULT_PROMPTS[EvidenceKind.from_value(kind)]


def _join(values: List[str]) -> str:
    return ", ".join(values) if values else "none reported"


def build_incident_summary_prompt(findings: IncidentFindings) -> str:
    """Prompt asking the model to narrate aggregated incident findings."""
    return f"""Please generate a comprehensive traffic accident summary based on the following aggregated findings:

Overall Confidence: {findings.overall_confidence:.2f}
Vehicle Count: {findings.vehicle_count}
Person Count: {findings.person_count}
Evidence Types: {_join(findings.evidence_types)}
Weather Conditions: {_join(findings.weather_conditions)}
Road Conditions: {_join(findings.road_conditions)}
Recommendations: {_join(findings.recommendations)}

Write a clear, factual summary of 4-6 sentences that integrates all available evidence and highlights key findings.
Return plain text only."""


# ── Investigator conversations ──────────────────────────

CONVERSATION_ERROR_REPLY = (
    "I apologize, but I encountered an error while processing your request. "
    "Please try again or rephrase your question."
)


def build_conversation_system_prompt(context: ConversationContext) -> str:
    """System message that grounds a conversation in one report's analyses."""
    return f"""You are an expert traffic accident investigator AI assistant helping analyze a traffic accident report.

CONTEXT:
- Report ID: {context.report_id}
- Incident ID: {context.incident_id}
- Evidence Items: {len(context.evidence_ids)}
- Focus Areas: {", ".join(context.focus_areas) or "General analysis"}

REPORT SUMMARY:
{context.report_summary}

EVIDENCE SUMMARY:
{context.evidence_summary}

INSTRUCTIONS:
1. Provide expert analysis based on the available evidence
2. Answer questions about the incident, vehicles, persons, and circumstances
3. Suggest additional investigation steps when appropriate
4. Maintain objectivity and note confidence levels in your assessments
5. Identify inconsistencies or gaps in the evidence
6. Provide recommendations for report improvement
7. Always cite specific evidence when making claims

LIMITATIONS:
- Cannot access real-time data or external systems
- Cannot provide legal advice
- Cannot make definitive fault determinations
- Analysis is based only on provided evidence

Respond professionally and provide detailed, evidence-based analysis."""


def build_conversation_prompt(system_prompt: str, history: List[ConversationMessage]) -> str:
    """Full prompt for the next assistant turn; system messages are not replayed."""
    transcript = "\n\n".join(
        f"{m.role.value.upper()}: {m.content}" for m in history if m.role != MessageRole.SYSTEM
    )
    return f"""{system_prompt}

CONVERSATION HISTORY:
{transcript}

Please provide a helpful, detailed response based on the evidence and context provided.
If you need clarification or additional information, ask specific questions.
Always maintain professional tone and cite evidence when making claims."""


def build_conversation_summary_prompt(messages: List[ConversationMessage]) -> str:
    user_lines = "\n".join(f"- {m.content}" for m in messages if m.role == MessageRole.USER)
    ai_lines = "\n".join(f"- {m.content[:200]}..." for m in messages if m.role == MessageRole.ASSISTANT)
    return f"""Please provide a summary of this conversation about a traffic accident report:

User Messages:
{user_lines or "- none"}

AI Responses:
{ai_lines or "- none"}

Return ONE JSON object:
{{
  "keyFindings": ["list of key findings discussed"],
  "recommendations": ["list of recommendations made"],
  "confidenceLevel": 0.0-1.0,
  "areasOfConcern": ["areas that need attention"],
  "nextSteps": ["recommended next steps"]
}}"""
