"""
Casualty report synthesis.

Per report, either reuse the analyses already stored for it or run a fresh
batch over the incident's evidence (cold start), then aggregate and upsert one
CasualtyReport keyed by report id. Repeating the call is safe: once analyses
exist, later calls take the reuse path and overwrite the same document.
"""
import asyncio
import json
import logging
import time
from datetime import datetime
from typing import List, Optional, Sequence

from casualty_ai.agents.prompts import CASUALTY_ANALYSIS_PROMPT
from casualty_ai.config import Settings, settings as default_settings
from casualty_ai.errors import NoEvidenceError, NotFoundError
from casualty_ai.models.schemas import (
    AIConfidence,
    AnalysisRecord,
    AnalysisStatus,
    BatchItem,
    CasualtyAssessment,
    CasualtyReport,
    CasualtyReportPage,
    EnvironmentalAnalysis,
    EvidenceRef,
    ProcessingSummary,
    SynthesisPath,
    SynthesisResult,
    VehicleAnalysis,
)
from casualty_ai.services.aggregator import AggregateView, Aggregator, aggregator as default_aggregator
from casualty_ai.services.batch_analyzer import BatchAnalyzer, BatchResult
from casualty_ai.services.identifiers import new_object_id, validate_object_id
from casualty_ai.services.stores import (
    AnalysisStore,
    CasualtyReportStore,
    EvidenceDirectory,
    ReportDirectory,
)

logger = logging.getLogger(__name__)


class CasualtyReportSynthesizer:
    """Builds and persists casualty reports from evidence analyses."""

    def __init__(
        self,
        reports: ReportDirectory,
        evidence: EvidenceDirectory,
        analysis_store: AnalysisStore,
        report_store: CasualtyReportStore,
        batch_analyzer: BatchAnalyzer,
        aggregator: Optional[Aggregator] = None,
        config: Optional[Settings] = None,
    ):
        self.reports = reports
        self.evidence = evidence
        self.analysis_store = analysis_store
        self.report_store = report_store
        self.batch_analyzer = batch_analyzer
        self.aggregator = aggregator or default_aggregator
        self.settings = config or default_settings

    def _log_structured(self, event: str, **kwargs):
        """Emit structured log entry."""
        logger.info(json.dumps({"event": event, **kwargs}, default=str))

    @staticmethod
    def decide_path(existing: Sequence[AnalysisRecord]) -> SynthesisPath:
        if existing:
            return SynthesisPath.HAS_EXISTING_ANALYSES
        return SynthesisPath.NEEDS_COLD_START

    async def synthesize_casualty_report(self, report_id: str) -> SynthesisResult:
        """Generate (or regenerate) the casualty report for a report.

        Raises InvalidIdentifierError for a malformed id, NotFoundError when the
        report does not exist and NoEvidenceError when a cold start finds no
        evidence. Per-evidence analysis failures only show up in the
        processing summary.
        """
        start_time = time.perf_counter()
        report_id = validate_object_id(report_id, "report_id")
        report = await self.reports.get_report(report_id)
        if report is None:
            raise NotFoundError("report", report_id)
        incident_id = report.incident_id

        existing = await self.analysis_store.find_by_report(report_id)
        path = self.decide_path(existing)
        self._log_structured(
            "synthesis_started",
            report_id=report_id,
            incident_id=incident_id,
            path=path.value,
            existing_analyses=len(existing),
        )

        if path == SynthesisPath.NEEDS_COLD_START:
            evidence = await self._incident_evidence(incident_id)
            batch = await self.batch_analyzer.batch_analyze(
                [
                    BatchItem(
                        evidence_id=item.id,
                        kind=item.kind,
                        media_locator=item.media_locator,
                        prompt=CASUALTY_ANALYSIS_PROMPT,
                    )
                    for item in evidence
                ],
                report_id=report_id,
                incident_id=incident_id,
            )
            records = await self._wait_until_visible(report_id, batch)
            summary_counts = (len(evidence), batch.succeeded, batch.failed)
        else:
            evidence = await self.evidence.get_incident_evidence(incident_id)
            records = existing
            summary_counts = (
                len({r.evidence_id for r in records}),
                sum(1 for r in records if r.status == AnalysisStatus.COMPLETED),
                sum(1 for r in records if r.status == AnalysisStatus.FAILED),
            )

        view = self.aggregator.aggregate(records, evidence)
        casualty_report = self.build_report(report_id, incident_id, view, *summary_counts)
        stored = await self.report_store.upsert_by_report_id(casualty_report)

        self._log_structured(
            "casualty_report_upserted",
            report_id=report_id,
            casualty_report_id=stored.id,
            path=path.value,
            evidence_count=len(evidence),
            analysis_count=len(records),
            overall_confidence=round(view.overall_confidence, 3),
            duration_ms=int((time.perf_counter() - start_time) * 1000),
        )
        return SynthesisResult(
            path=path,
            evidence_count=len(evidence),
            analysis_count=len(records),
            report=stored,
        )

    async def get_casualty_report(self, report_id: str) -> CasualtyReport:
        report_id = validate_object_id(report_id, "report_id")
        stored = await self.report_store.find_by_report_id(report_id)
        if stored is None:
            raise NotFoundError(
                "casualty report",
                report_id,
                f"Generated casualty report not found for report: {report_id}",
            )
        return stored

    async def list_casualty_reports(
        self,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "generated_at",
        sort_order: str = "desc",
        incident_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> CasualtyReportPage:
        if incident_id is not None:
            incident_id = validate_object_id(incident_id, "incident_id")
        return await self.report_store.list_reports(
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
            incident_id=incident_id,
            date_from=date_from,
            date_to=date_to,
        )

    async def _incident_evidence(self, incident_id: str) -> List[EvidenceRef]:
        evidence = await self.evidence.get_incident_evidence(incident_id)
        if not evidence:
            raise NoEvidenceError(incident_id)
        return evidence

    async def _wait_until_visible(self, report_id: str, batch: BatchResult) -> List[AnalysisRecord]:
        """Re-query the store until every record the batch produced can be read back."""
        expected = {record.id for record in batch.records}
        interval = self.settings.analysis_visibility_poll_interval_ms / 1000
        attempts = self.settings.analysis_visibility_max_attempts

        records: List[AnalysisRecord] = []
        for attempt in range(attempts):
            records = await self.analysis_store.find_by_report(report_id)
            if expected <= {r.id for r in records}:
                return records
            if attempt < attempts - 1:
                await asyncio.sleep(interval)

        missing = len(expected - {r.id for r in records})
        logger.warning(
            f"{missing} analyses for report {report_id} still not visible after "
            f"{attempts} attempts; synthesizing from {len(records)} records"
        )
        return records

    @staticmethod
    def build_report(
        report_id: str,
        incident_id: str,
        view: AggregateView,
        total_evidence: int,
        succeeded: int,
        failed: int,
    ) -> CasualtyReport:
        """Shape an aggregate view into the persisted casualty report document."""
        return CasualtyReport(
            id=new_object_id(),
            report_id=report_id,
            incident_id=incident_id,
            processing_summary=ProcessingSummary(
                total_evidence=total_evidence,
                successfully_processed=succeeded,
                failed_processing=failed,
                overall_confidence=view.overall_confidence,
            ),
            casualty_assessment=CasualtyAssessment(
                total_casualties=len(view.casualties),
                casualties=view.casualties,
                injury_breakdown=view.injury_breakdown,
            ),
            vehicle_analysis=VehicleAnalysis(
                total_vehicles=len(view.vehicles),
                vehicles=view.vehicles,
                damage_assessment=view.damage,
            ),
            environmental_analysis=EnvironmentalAnalysis(
                factors=view.environmental_factors,
                weather_conditions=view.weather_conditions,
                road_conditions=view.road_conditions,
                lighting=view.lighting,
                road_type=view.road_type,
                traffic_flow=view.traffic_flow,
            ),
            incident_timeline=view.timeline,
            recommendations=view.recommendations,
            ai_confidence=AIConfidence(
                overall=view.overall_confidence,
                vehicle_detection=view.object_detection_score,
                casualty_assessment=view.casualty_confidence,
                scene_reconstruction=view.scene_reconstruction_score,
            ),
        )
