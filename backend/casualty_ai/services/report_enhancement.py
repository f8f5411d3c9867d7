"""
Report enhancement, recommendations, incident summaries and report updates
built on the shared Aggregator.
"""
import json
import logging
from typing import Any, Dict, Optional

from casualty_ai.agents.prompts import build_incident_summary_prompt
from casualty_ai.errors import NotFoundError, UpstreamUnavailableError
from casualty_ai.models.schemas import (
    AnalysisRecord,
    IncidentFindings,
    IncidentSummary,
    RecommendationSet,
    Report,
    ReportAnalysisUpdate,
    ReportEnhancement,
    utcnow,
)
from casualty_ai.services.aggregator import (
    ENHANCEMENT_SCENE_FACTORS,
    Aggregator,
    aggregator as default_aggregator,
    confidence_analysis,
    count_unique_persons,
    count_unique_vehicles,
    object_detection_score,
    overall_confidence,
    scene_reconstruction_score,
)
from casualty_ai.services.gemini_client import GeminiClient
from casualty_ai.services.identifiers import validate_object_id
from casualty_ai.services.stores import AnalysisStore, ReportDirectory

logger = logging.getLogger(__name__)

# Each analysis adds this many percentage points of AI contribution, capped at 100
AI_CONTRIBUTION_PER_ANALYSIS = 15


class ReportEnhancer:
    """Derives report-level enhancements from a report's analyses."""

    def __init__(
        self,
        reports: ReportDirectory,
        analysis_store: AnalysisStore,
        model_client: GeminiClient,
        aggregator: Optional[Aggregator] = None,
    ):
        self.reports = reports
        self.analysis_store = analysis_store
        self.model_client = model_client
        self.aggregator = aggregator or default_aggregator

    async def _require_report(self, report_id: str) -> str:
        report_id = validate_object_id(report_id, "report_id")
        if await self.reports.get_report(report_id) is None:
            raise NotFoundError("report", report_id)
        return report_id

    async def enhance_report(self, report_id: str) -> ReportEnhancement:
        report_id = await self._require_report(report_id)
        records = await self.analysis_store.find_by_report(report_id)
        if not records:
            logger.info(f"Report {report_id} has no analyses; returning empty enhancement")
            return ReportEnhancement(report_id=report_id)

        view = self.aggregator.aggregate(records, scene_factors=ENHANCEMENT_SCENE_FACTORS)
        vehicle_count = count_unique_vehicles(records)
        person_count = count_unique_persons(records)

        enhancement = ReportEnhancement(
            report_id=report_id,
            ai_contribution=min(len(records) * AI_CONTRIBUTION_PER_ANALYSIS, 100),
            overall_confidence=view.overall_confidence,
            object_detection_score=view.object_detection_score,
            scene_reconstruction_score=view.scene_reconstruction_score,
            executive_summary=(
                f"AI analysis of {len(records)} evidence items reveals an incident involving "
                f"{vehicle_count} vehicle(s) and {person_count} person(s). Analysis confidence "
                f"varies by evidence type, with scene reconstruction and damage assessment completed."
            ),
            vehicle_analysis=self.aggregator.raw_vehicles(records),
            scene_analysis=self.aggregator.scene_value_sets(records),
            damage_assessment=view.damage,
            recommendations=RecommendationSet(
                investigation=view.additional_evidence_needed,
                technical=view.expert_consultation,
                legal=view.legal_implications,
                priority=view.investigation_priority,
            ),
            confidence_analysis=confidence_analysis(records),
        )
        logger.info(json.dumps({
            "event": "report_enhanced",
            "report_id": report_id,
            "analysis_count": len(records),
            "ai_contribution": enhancement.ai_contribution,
        }))
        return enhancement

    async def generate_recommendations(self, report_id: str) -> RecommendationSet:
        report_id = validate_object_id(report_id, "report_id")
        records = await self.analysis_store.find_by_report(report_id)
        return self.aggregator.recommendation_set(records)

    async def update_report_with_analysis(self, report_id: str, analysis_id: str) -> Report:
        """Fold one analysis into the report's content and refresh its AI scores.

        Scores are recomputed over every analysis attached to the report, so
        repeating the call for the same analysis leaves the report unchanged
        apart from its timestamps.
        """
        report_id = validate_object_id(report_id, "report_id")
        analysis_id = validate_object_id(analysis_id, "analysis_id")
        analysis = await self.analysis_store.get(analysis_id)
        if analysis is None:
            raise NotFoundError("analysis", analysis_id)
        report = await self.reports.get_report(report_id)
        if report is None:
            raise NotFoundError("report", report_id)

        records = await self.analysis_store.find_by_report(report_id)
        update = ReportAnalysisUpdate(
            content=self._integrate_analysis(report.content, analysis),
            ai_contribution=min(len(records) * AI_CONTRIBUTION_PER_ANALYSIS, 100),
            ai_overall_confidence=overall_confidence(records),
            ai_object_detection=object_detection_score(records),
            ai_scene_reconstruction=scene_reconstruction_score(records, ENHANCEMENT_SCENE_FACTORS),
        )
        updated = await self.reports.update_report(report_id, update)
        logger.info(json.dumps({
            "event": "report_analysis_integrated",
            "report_id": report_id,
            "analysis_id": analysis_id,
            "analysis_count": len(records),
        }))
        return updated

    @staticmethod
    def _integrate_analysis(content: Dict[str, Any], analysis: AnalysisRecord) -> Dict[str, Any]:
        analyses = dict(content.get("analyses") or {})
        analyses[analysis.id] = {
            "type": analysis.analysis_type.value,
            "confidence": analysis.confidence_score,
            "results": analysis.analysis_result,
            "timestamp": analysis.created_at.isoformat(),
        }
        return {
            **content,
            "last_updated": utcnow().isoformat(),
            "analyses": analyses,
        }

    async def generate_incident_summary(self, incident_id: str) -> IncidentSummary:
        """Aggregate an incident's analyses and have the model narrate them."""
        incident_id = validate_object_id(incident_id, "incident_id")
        records = await self.analysis_store.find_by_incident(incident_id)
        if not records:
            raise NotFoundError(
                "incident",
                incident_id,
                f"No AI analysis results found for incident: {incident_id}",
            )

        view = self.aggregator.aggregate(records)
        findings = IncidentFindings(
            overall_confidence=view.overall_confidence,
            vehicle_count=view.max_vehicle_count,
            person_count=view.max_person_count,
            weather_conditions=view.weather_conditions,
            road_conditions=view.road_conditions,
            recommendations=view.additional_evidence_needed,
            evidence_types=view.evidence_types,
        )

        try:
            generation = await self.model_client.generate(build_incident_summary_prompt(findings))
            summary = generation.text.strip()
        except UpstreamUnavailableError as e:
            logger.warning(f"Incident summary generation failed for {incident_id}, using template: {e}")
            summary = ""
        if not summary:
            summary = self._template_summary(findings, len(records))

        return IncidentSummary(
            incident_id=incident_id,
            summary=summary,
            analysis_count=len(records),
            overall_confidence=view.overall_confidence,
            key_findings=findings,
            recommendations=list(view.additional_evidence_needed),
        )

    @staticmethod
    def _template_summary(findings: IncidentFindings, analysis_count: int) -> str:
        return (
            f"Analysis of {analysis_count} evidence items identified up to "
            f"{findings.vehicle_count} vehicle(s) and {findings.person_count} person(s). "
            f"Environmental factors and road conditions have been analyzed. "
            f"Overall confidence is {findings.overall_confidence:.2f}."
        )
