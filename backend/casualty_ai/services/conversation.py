"""
Investigator conversations about a report.

A conversation opens with a system message built from the report's analyses
and evidence; each user turn is answered by the model using the system
message plus the most recent history.
"""
import json
import logging
import math
import time
from collections import Counter
from typing import List, Optional, Sequence

from casualty_ai.agents.prompts import (
    CONVERSATION_ERROR_REPLY,
    build_conversation_prompt,
    build_conversation_summary_prompt,
    build_conversation_system_prompt,
)
from casualty_ai.errors import (
    ConversationAccessError,
    InvalidConversationStateError,
    NotFoundError,
    UpstreamUnavailableError,
)
from casualty_ai.models.schemas import (
    AnalysisRecord,
    Attachment,
    Conversation,
    ConversationContext,
    ConversationMessage,
    ConversationStatus,
    ConversationSummary,
    EvidenceRef,
    MessageExchange,
    MessageRole,
    Report,
)
from casualty_ai.services.aggregator import (
    Aggregator,
    aggregator as default_aggregator,
)
from casualty_ai.services.gemini_client import GeminiClient
from casualty_ai.services.identifiers import new_object_id, validate_object_id
from casualty_ai.services.response_parser import find_balanced_json_block
from casualty_ai.services.stores import (
    AnalysisStore,
    ConversationStore,
    EvidenceDirectory,
    ReportDirectory,
)

logger = logging.getLogger(__name__)

# Most recent messages replayed to the model on each turn
HISTORY_WINDOW = 10

BASE_ANALYSIS_GOALS = ("incident_analysis", "cause_determination")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def extract_focus_areas(records: Sequence[AnalysisRecord]) -> List[str]:
    areas: List[str] = []

    def add(area: str):
        if area not in areas:
            areas.append(area)

    for record in records:
        add(record.analysis_type.value)
        detected = record.detected_objects
        if detected is not None:
            if detected.vehicles:
                add("vehicle_analysis")
            if detected.persons:
                add("person_analysis")
            if detected.road_signs:
                add("traffic_control")
        if record.scene_analysis is not None and not record.scene_analysis.is_empty():
            add("scene_reconstruction")
        damage = record.damage_assessment
        if damage is not None and (damage.vehicle_damage or damage.property_damage):
            add("damage_assessment")
    return areas


def extract_analysis_goals(report: Report) -> List[str]:
    goals = list(BASE_ANALYSIS_GOALS)
    if report.type == "Investigation":
        goals.extend(["detailed_investigation", "evidence_correlation"])
    if report.priority == "High Priority":
        goals.extend(["urgent_analysis", "immediate_recommendations"])
    return goals


def build_report_summary(report: Report, records: Sequence[AnalysisRecord], confidence: float) -> str:
    return "\n".join([
        f"Report: {report.title or 'Untitled'}",
        f"Type: {report.type or 'unknown'}",
        f"Status: {report.status or 'unknown'}",
        f"Priority: {report.priority or 'unknown'}",
        f"AI Analyses: {len(records)}",
        f"Average Confidence: {confidence * 100:.1f}%",
        f"Created: {report.created_at.isoformat() if report.created_at else 'unknown'}",
        f"Last Updated: {report.updated_at.isoformat() if report.updated_at else 'unknown'}",
    ])


def build_evidence_summary(evidence: Sequence[EvidenceRef]) -> str:
    counts = Counter(item.kind.value for item in evidence)
    breakdown = ", ".join(f"{kind}: {count}" for kind, count in counts.items())
    return f"Evidence Summary ({len(evidence)} total): {breakdown}"


class ConversationService:
    """Starts, continues, summarizes and archives report conversations."""

    def __init__(
        self,
        reports: ReportDirectory,
        evidence: EvidenceDirectory,
        analysis_store: AnalysisStore,
        conversation_store: ConversationStore,
        model_client: GeminiClient,
        aggregator: Optional[Aggregator] = None,
    ):
        self.reports = reports
        self.evidence = evidence
        self.analysis_store = analysis_store
        self.conversation_store = conversation_store
        self.model_client = model_client
        self.aggregator = aggregator or default_aggregator

    def _log_structured(self, event: str, **kwargs):
        """Emit structured log entry."""
        logger.info(json.dumps({"event": event, **kwargs}, default=str))

    async def _require_report(self, report_id: str) -> Report:
        report = await self.reports.get_report(report_id)
        if report is None:
            raise NotFoundError("report", report_id)
        return report

    async def _load(self, conversation_id: str) -> Conversation:
        conversation_id = validate_object_id(conversation_id, "conversation_id")
        conversation = await self.conversation_store.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    async def _load_owned(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self._load(conversation_id)
        if conversation.user_id != validate_object_id(user_id, "user_id"):
            logger.warning(f"User {user_id} denied access to conversation {conversation.id}")
            raise ConversationAccessError(conversation.id, user_id)
        return conversation

    async def build_conversation_context(self, report_id: str) -> ConversationContext:
        """Summarize a report's analyses and evidence for the system message."""
        report_id = validate_object_id(report_id, "report_id")
        report = await self._require_report(report_id)
        records = await self.analysis_store.find_by_report(report_id)
        view = self.aggregator.aggregate(records)

        evidence_ids = list(dict.fromkeys(r.evidence_id for r in records))
        incident_evidence = await self.evidence.get_incident_evidence(report.incident_id)
        analyzed = [e for e in incident_evidence if e.id in evidence_ids]

        return ConversationContext(
            report_id=report_id,
            incident_id=report.incident_id,
            evidence_ids=evidence_ids,
            focus_areas=extract_focus_areas(records),
            analysis_goals=extract_analysis_goals(report),
            report_summary=build_report_summary(report, records, view.overall_confidence),
            evidence_summary=build_evidence_summary(analyzed),
        )

    async def start_conversation(
        self,
        report_id: str,
        user_id: str,
        title: str,
        initial_message: Optional[str] = None,
    ) -> Conversation:
        report_id = validate_object_id(report_id, "report_id")
        user_id = validate_object_id(user_id, "user_id")
        context = await self.build_conversation_context(report_id)

        conversation = Conversation(
            id=new_object_id(),
            report_id=report_id,
            user_id=user_id,
            title=title,
            context=context,
        )
        conversation.add_message(ConversationMessage(
            role=MessageRole.SYSTEM,
            content=build_conversation_system_prompt(context),
        ))
        if initial_message:
            conversation.add_message(ConversationMessage(role=MessageRole.USER, content=initial_message))
            conversation.add_message(await self._generate_ai_response(conversation))

        await self.conversation_store.save(conversation)
        self._log_structured(
            "conversation_started",
            conversation_id=conversation.id,
            report_id=report_id,
            focus_areas=context.focus_areas,
        )
        return conversation

    async def send_message(
        self,
        conversation_id: str,
        user_id: str,
        message: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> MessageExchange:
        conversation = await self._load_owned(conversation_id, user_id)
        if conversation.status != ConversationStatus.ACTIVE:
            raise InvalidConversationStateError(
                f"Conversation {conversation.id} is {conversation.status.value}, not active"
            )

        user_message = ConversationMessage(
            role=MessageRole.USER,
            content=message,
            attachments=attachments or [],
        )
        conversation.add_message(user_message)
        ai_response = await self._generate_ai_response(conversation)
        conversation.add_message(ai_response)
        await self.conversation_store.save(conversation)

        return MessageExchange(
            conversation_id=conversation.id,
            user_message=user_message,
            ai_response=ai_response,
            total_tokens_used=conversation.total_tokens_used,
        )

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        return await self._load_owned(conversation_id, user_id)

    async def get_user_conversations(self, user_id: str) -> List[Conversation]:
        return await self.conversation_store.find_by_user(validate_object_id(user_id, "user_id"))

    async def get_report_conversations(self, report_id: str) -> List[Conversation]:
        return await self.conversation_store.find_by_report(validate_object_id(report_id, "report_id"))

    async def archive_conversation(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self._load_owned(conversation_id, user_id)
        conversation.status = ConversationStatus.ARCHIVED
        await self.conversation_store.save(conversation)
        logger.info(f"Archived conversation {conversation.id}")
        return conversation

    async def generate_conversation_summary(self, conversation_id: str) -> ConversationSummary:
        """Have the model summarize the conversation and mark it completed."""
        conversation = await self._load(conversation_id)
        prompt = build_conversation_summary_prompt(conversation.messages)
        try:
            generation = await self.model_client.generate(prompt)
        except UpstreamUnavailableError as e:
            logger.error(f"Conversation summary failed for {conversation.id}: {e}")
            raise UpstreamUnavailableError("Failed to generate conversation summary") from e

        summary = self._parse_summary(generation.text)
        conversation.summary = summary
        conversation.status = ConversationStatus.COMPLETED
        await self.conversation_store.save(conversation)
        self._log_structured("conversation_summarized", conversation_id=conversation.id)
        return summary

    @staticmethod
    def _parse_summary(text: str) -> ConversationSummary:
        block = find_balanced_json_block(text)
        if block is not None:
            try:
                data = json.loads(block)
                if isinstance(data, dict):
                    return ConversationSummary.model_validate(data)
            except (ValueError, RecursionError) as e:
                logger.warning(f"Conversation summary was not usable JSON: {e}")
        return ConversationSummary(summary=text.strip())

    async def _generate_ai_response(self, conversation: Conversation) -> ConversationMessage:
        started = time.monotonic()
        prompt = build_conversation_prompt(
            conversation.system_prompt or "",
            conversation.messages[-HISTORY_WINDOW:],
        )
        try:
            generation = await self.model_client.generate(prompt)
        except UpstreamUnavailableError as e:
            logger.error(f"Assistant reply failed for conversation {conversation.id}: {e}")
            return ConversationMessage(
                role=MessageRole.ASSISTANT,
                content=CONVERSATION_ERROR_REPLY,
                tokens_used=0,
            )

        return ConversationMessage(
            role=MessageRole.ASSISTANT,
            content=generation.text,
            tokens_used=generation.tokens_used or estimate_tokens(prompt + generation.text),
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )
