"""
Shared fixtures: in-memory stores, fake report/evidence collaborators and a
scripted model client.
"""
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Union

import pytest

from casualty_ai.config import Settings
from casualty_ai.errors import UpstreamUnavailableError
from casualty_ai.models.schemas import EvidenceKind, EvidenceRef, Report, ReportAnalysisUpdate
from casualty_ai.services.batch_analyzer import BatchAnalyzer
from casualty_ai.services.casualty_report import CasualtyReportSynthesizer
from casualty_ai.services.conversation import ConversationService
from casualty_ai.services.evidence_analyzer import EvidenceAnalyzer
from casualty_ai.services.gemini_client import GenerationResult, MediaPayload
from casualty_ai.services.report_enhancement import ReportEnhancer
from casualty_ai.services.stores import (
    InMemoryAnalysisStore,
    InMemoryCasualtyReportStore,
    InMemoryConversationStore,
)


def oid(n: int) -> str:
    """Deterministic 24-hex object id."""
    return f"{n:024x}"


REPORT_ID = oid(0xA1)
USER_ID = oid(0xC1)
INCIDENT_ID = oid(0xB1)
BASE_TIME = datetime(2026, 3, 14, 8, 30, tzinfo=timezone.utc)


def structured_response(
    confidence: Optional[float] = 0.9,
    vehicles: Optional[List[dict]] = None,
    persons: Optional[List[dict]] = None,
    weather: Optional[List[str]] = None,
    costs: Optional[List[str]] = None,
    **scene,
) -> str:
    body = {
        "detectedObjects": {
            "vehicles": vehicles or [],
            "persons": persons or [],
            "roadSigns": [],
            "roadConditions": [],
        },
        "sceneAnalysis": {"weatherConditions": weather or [], **scene},
        "damageAssessment": {
            "vehicleDamage": [{"severity": "moderate", "estimatedCost": c} for c in (costs or [])],
            "propertyDamage": [],
        },
        "recommendations": {
            "investigationPriority": "high",
            "additionalEvidenceNeeded": ["witness_statements"],
            "expertConsultation": ["accident_reconstruction"],
            "legalImplications": [],
        },
    }
    if confidence is not None:
        body["confidenceScore"] = confidence
    return "Here is the analysis:\n" + json.dumps(body)


class FakeModelClient:
    """Scripted stand-in for GeminiClient keyed by media locator."""

    def __init__(self, default_text: str = ""):
        self.default_text = default_text
        self.responses: Dict[str, Union[str, Exception]] = {}
        self.fetch_failures: Dict[str, Exception] = {}
        self.generate_calls: List[str] = []
        self.fetch_calls: List[str] = []
        self.summary_text = "Two vehicles collided at the intersection."

    async def fetch_media(self, locator: str) -> MediaPayload:
        self.fetch_calls.append(locator)
        if locator in self.fetch_failures:
            raise self.fetch_failures[locator]
        return MediaPayload(data=locator.encode(), mime_type="image/jpeg")

    async def generate(self, prompt: str, media: Optional[MediaPayload] = None) -> GenerationResult:
        self.generate_calls.append(prompt)
        if media is None:
            text = self.summary_text
        else:
            text = self.responses.get(media.data.decode(), self.default_text)
        if isinstance(text, Exception):
            raise text
        return GenerationResult(text=text, tokens_used=120, model="fake-model", latency_ms=5)


class FakeReportDirectory:
    def __init__(self, reports: Optional[List[Report]] = None):
        self.reports = {r.id: r for r in reports or []}
        self.updates: List[ReportAnalysisUpdate] = []

    async def get_report(self, report_id: str) -> Optional[Report]:
        return self.reports.get(report_id)

    async def update_report(self, report_id: str, update: ReportAnalysisUpdate) -> Report:
        self.updates.append(update)
        report = self.reports[report_id].model_copy(update=update.model_dump())
        self.reports[report_id] = report
        return report


class FakeEvidenceDirectory:
    def __init__(self, evidence: Optional[Dict[str, List[EvidenceRef]]] = None):
        self.evidence = evidence or {}
        self.calls = 0

    async def get_incident_evidence(self, incident_id: str) -> List[EvidenceRef]:
        self.calls += 1
        return list(self.evidence.get(incident_id, []))


def make_evidence(n: int, kind: EvidenceKind = EvidenceKind.IMAGE, minutes: Optional[int] = 0) -> EvidenceRef:
    return EvidenceRef(
        id=oid(0xE0 + n),
        kind=kind,
        media_locator=f"https://media.example.org/evidence/{n}.jpg",
        created_at=None if minutes is None else BASE_TIME + timedelta(minutes=minutes),
    )


@pytest.fixture
def test_settings():
    return Settings(
        google_api_key="",
        batch_max_concurrency=2,
        analysis_visibility_poll_interval_ms=1,
        analysis_visibility_max_attempts=3,
        database_path=":memory:",
    )


@pytest.fixture
def model_client():
    return FakeModelClient(default_text=structured_response())


@pytest.fixture
def analysis_store():
    return InMemoryAnalysisStore()


@pytest.fixture
def report_store():
    return InMemoryCasualtyReportStore()


@pytest.fixture
def evidence_items():
    return [
        make_evidence(1, EvidenceKind.IMAGE, minutes=20),
        make_evidence(2, EvidenceKind.VIDEO, minutes=5),
        make_evidence(3, EvidenceKind.DOCUMENT, minutes=None),
    ]


@pytest.fixture
def reports():
    return FakeReportDirectory([Report(id=REPORT_ID, incident_id=INCIDENT_ID, title="Collision on 5th")])


@pytest.fixture
def evidence_directory(evidence_items):
    return FakeEvidenceDirectory({INCIDENT_ID: evidence_items})


@pytest.fixture
def analyzer(model_client, analysis_store):
    return EvidenceAnalyzer(model_client, analysis_store)


@pytest.fixture
def batch_analyzer(analyzer, test_settings):
    return BatchAnalyzer(analyzer, test_settings)


@pytest.fixture
def synthesizer(reports, evidence_directory, analysis_store, report_store, batch_analyzer, test_settings):
    return CasualtyReportSynthesizer(
        reports,
        evidence_directory,
        analysis_store,
        report_store,
        batch_analyzer,
        config=test_settings,
    )


@pytest.fixture
def enhancer(reports, analysis_store, model_client):
    return ReportEnhancer(reports, analysis_store, model_client)


@pytest.fixture
def upstream_error():
    return UpstreamUnavailableError("Failed to fetch media from URL")


@pytest.fixture
def conversation_store():
    return InMemoryConversationStore()


@pytest.fixture
def conversations(reports, evidence_directory, analysis_store, conversation_store, model_client):
    return ConversationService(reports, evidence_directory, analysis_store, conversation_store, model_client)
