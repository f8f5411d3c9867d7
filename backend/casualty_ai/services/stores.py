"""
Storage contracts used by the analysis pipeline, with in-memory implementations.

The pipeline owns no entity CRUD: reports and evidence come from their own
services through ReportDirectory / EvidenceDirectory, and analyses, casualty
reports and investigator conversations go through the store protocols below.
SQLite-backed stores live in casualty_ai.services.database.
"""
import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from casualty_ai.errors import NotFoundError
from casualty_ai.models.schemas import (
    AnalysisRecord,
    CasualtyReport,
    CasualtyReportPage,
    Conversation,
    EvidenceRef,
    Report,
    ReportAnalysisUpdate,
    utcnow,
)

logger = logging.getLogger(__name__)

REPORT_SORT_FIELDS = ("generated_at", "created_at", "updated_at")


class AnalysisStore(Protocol):
    async def get(self, analysis_id: str) -> Optional[AnalysisRecord]: ...

    async def find_by_report(self, report_id: str) -> List[AnalysisRecord]: ...

    async def find_by_incident(self, incident_id: str) -> List[AnalysisRecord]: ...

    async def find_by_evidence(self, evidence_id: str) -> List[AnalysisRecord]: ...

    async def save(self, record: AnalysisRecord) -> AnalysisRecord: ...

    async def update(self, record: AnalysisRecord) -> AnalysisRecord: ...


class CasualtyReportStore(Protocol):
    async def find_by_report_id(self, report_id: str) -> Optional[CasualtyReport]: ...

    async def upsert_by_report_id(self, report: CasualtyReport) -> CasualtyReport: ...

    async def list_reports(
        self,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "generated_at",
        sort_order: str = "desc",
        incident_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> CasualtyReportPage: ...


class ReportDirectory(Protocol):
    async def get_report(self, report_id: str) -> Optional[Report]: ...

    async def update_report(self, report_id: str, update: ReportAnalysisUpdate) -> Report: ...


class ConversationStore(Protocol):
    async def get(self, conversation_id: str) -> Optional[Conversation]: ...

    async def save(self, conversation: Conversation) -> Conversation: ...

    async def find_by_user(self, user_id: str) -> List[Conversation]: ...

    async def find_by_report(self, report_id: str) -> List[Conversation]: ...


class EvidenceDirectory(Protocol):
    async def get_incident_evidence(self, incident_id: str) -> List[EvidenceRef]: ...


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so mixed sources compare cleanly."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_page_args(page: int, limit: int, sort_by: str, sort_order: str):
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or 10), 100))
    if sort_by not in REPORT_SORT_FIELDS:
        logger.warning(f"Unsupported sort field '{sort_by}', using generated_at")
        sort_by = "generated_at"
    descending = str(sort_order).lower() != "asc"
    return page, limit, sort_by, descending


class InMemoryAnalysisStore:
    """Analysis records kept in a dict; copies in and out so callers never alias."""

    def __init__(self):
        self._records: Dict[str, AnalysisRecord] = {}

    def _sorted(self, records: List[AnalysisRecord]) -> List[AnalysisRecord]:
        ordered = sorted(records, key=lambda r: as_utc(r.created_at), reverse=True)
        return [r.model_copy(deep=True) for r in ordered]

    async def get(self, analysis_id: str) -> Optional[AnalysisRecord]:
        record = self._records.get(analysis_id)
        return record.model_copy(deep=True) if record else None

    async def find_by_report(self, report_id: str) -> List[AnalysisRecord]:
        return self._sorted([r for r in self._records.values() if r.report_id == report_id])

    async def find_by_incident(self, incident_id: str) -> List[AnalysisRecord]:
        return self._sorted([r for r in self._records.values() if r.incident_id == incident_id])

    async def find_by_evidence(self, evidence_id: str) -> List[AnalysisRecord]:
        return self._sorted([r for r in self._records.values() if r.evidence_id == evidence_id])

    async def save(self, record: AnalysisRecord) -> AnalysisRecord:
        self._records[record.id] = record.model_copy(deep=True)
        return record

    async def update(self, record: AnalysisRecord) -> AnalysisRecord:
        if record.id not in self._records:
            raise NotFoundError("analysis", record.id)
        record.updated_at = utcnow()
        self._records[record.id] = record.model_copy(deep=True)
        return record


class InMemoryCasualtyReportStore:
    """Casualty reports keyed by report id; the lock makes upsert atomic."""

    def __init__(self):
        self._reports: Dict[str, CasualtyReport] = {}
        self._lock = asyncio.Lock()

    async def find_by_report_id(self, report_id: str) -> Optional[CasualtyReport]:
        report = self._reports.get(report_id)
        return report.model_copy(deep=True) if report else None

    async def upsert_by_report_id(self, report: CasualtyReport) -> CasualtyReport:
        async with self._lock:
            existing = self._reports.get(report.report_id)
            stored = report.model_copy(deep=True)
            if existing is not None:
                stored.id = existing.id
                stored.created_at = existing.created_at
            stored.updated_at = utcnow()
            self._reports[report.report_id] = stored
            return stored.model_copy(deep=True)

    async def list_reports(
        self,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "generated_at",
        sort_order: str = "desc",
        incident_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> CasualtyReportPage:
        page, limit, sort_by, descending = normalize_page_args(page, limit, sort_by, sort_order)
        reports = list(self._reports.values())
        if incident_id:
            reports = [r for r in reports if r.incident_id == incident_id]
        if date_from:
            reports = [r for r in reports if as_utc(r.generated_at) >= as_utc(date_from)]
        if date_to:
            reports = [r for r in reports if as_utc(r.generated_at) <= as_utc(date_to)]
        reports.sort(key=lambda r: as_utc(getattr(r, sort_by)), reverse=descending)

        total = len(reports)
        start = (page - 1) * limit
        return CasualtyReportPage(
            items=[r.model_copy(deep=True) for r in reports[start:start + limit]],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )


class InMemoryConversationStore:
    """Conversations keyed by id, listed newest activity first."""

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}

    def _sorted(self, conversations: List[Conversation]) -> List[Conversation]:
        ordered = sorted(conversations, key=lambda c: as_utc(c.updated_at), reverse=True)
        return [c.model_copy(deep=True) for c in ordered]

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def save(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def find_by_user(self, user_id: str) -> List[Conversation]:
        return self._sorted([c for c in self._conversations.values() if c.user_id == user_id])

    async def find_by_report(self, report_id: str) -> List[Conversation]:
        return self._sorted([c for c in self._conversations.values() if c.report_id == report_id])
