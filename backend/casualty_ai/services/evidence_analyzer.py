"""
Evidence analyzer: one evidence item through prompt selection, the model call
and response parsing into a persisted AnalysisRecord.
"""
import json
import logging
import time
from typing import List, Optional, Union

from casualty_ai.agents.prompts import get_default_prompt
from casualty_ai.errors import InvalidAnalysisStateError, NotFoundError
from casualty_ai.models.schemas import (
    AnalysisRecord,
    AnalysisStatus,
    EvidenceKind,
)
from casualty_ai.services.gemini_client import GeminiClient
from casualty_ai.services.identifiers import new_object_id, validate_object_id
from casualty_ai.services.response_parser import ResponseParser, response_parser
from casualty_ai.services.stores import AnalysisStore

logger = logging.getLogger(__name__)

# Structured responses that omit confidenceScore
DEFAULT_STRUCTURED_CONFIDENCE = 0.8


class EvidenceAnalyzer:
    """Runs single evidence items through the model and records the outcome."""

    def __init__(
        self,
        model_client: GeminiClient,
        analysis_store: AnalysisStore,
        parser: Optional[ResponseParser] = None,
    ):
        self.model_client = model_client
        self.analysis_store = analysis_store
        self.parser = parser or response_parser

    def _log_structured(self, event: str, **kwargs):
        """Emit structured log entry."""
        logger.info(json.dumps({"event": event, **kwargs}, default=str))

    async def analyze_evidence(
        self,
        evidence_id: str,
        kind: Union[EvidenceKind, str],
        media_locator: str,
        prompt: Optional[str] = None,
        report_id: Optional[str] = None,
        incident_id: Optional[str] = None,
    ) -> AnalysisRecord:
        """Analyze one evidence item.

        Exactly one AnalysisRecord is created. On failure it is persisted in
        the failed state and the error is re-raised.
        """
        evidence_id = validate_object_id(evidence_id, "evidence_id")
        if report_id is not None:
            report_id = validate_object_id(report_id, "report_id")
        if incident_id is not None:
            incident_id = validate_object_id(incident_id, "incident_id")
        kind = EvidenceKind.from_value(kind)

        record = AnalysisRecord(
            id=new_object_id(),
            evidence_id=evidence_id,
            report_id=report_id,
            incident_id=incident_id,
            analysis_type=kind,
            prompt=prompt or get_default_prompt(kind),
            media_locator=media_locator,
        )
        await self.analysis_store.save(record)
        self._log_structured(
            "analysis_started",
            analysis_id=record.id,
            evidence_id=evidence_id,
            kind=kind.value,
        )

        record.mark_processing()
        await self.analysis_store.update(record)
        return await self._run(record)

    async def retry_analysis(self, analysis_id: str) -> AnalysisRecord:
        """Re-run a failed analysis in place, keeping its id."""
        analysis_id = validate_object_id(analysis_id, "analysis_id")
        record = await self.analysis_store.get(analysis_id)
        if record is None:
            raise NotFoundError("analysis", analysis_id)
        if record.status != AnalysisStatus.FAILED:
            raise InvalidAnalysisStateError(
                f"Only failed analyses can be retried; analysis {analysis_id} is {record.status.value}"
            )
        if not record.media_locator:
            raise InvalidAnalysisStateError(f"Analysis {analysis_id} has no media locator to retry")

        record.mark_retry()
        await self.analysis_store.update(record)
        self._log_structured("analysis_retry", analysis_id=analysis_id, evidence_id=record.evidence_id)
        return await self._run(record)

    async def get_analysis_results(self, evidence_id: str) -> List[AnalysisRecord]:
        evidence_id = validate_object_id(evidence_id, "evidence_id")
        return await self.analysis_store.find_by_evidence(evidence_id)

    async def get_report_analysis_results(self, report_id: str) -> List[AnalysisRecord]:
        report_id = validate_object_id(report_id, "report_id")
        return await self.analysis_store.find_by_report(report_id)

    async def _run(self, record: AnalysisRecord) -> AnalysisRecord:
        """Fetch, generate, parse and complete; any failure leaves the record failed."""
        start_time = time.perf_counter()
        try:
            media = await self.model_client.fetch_media(record.media_locator)
            generation = await self.model_client.generate(record.prompt, media)
            result = self.parser.parse(generation.text, record.analysis_type)
            confidence = result.confidence_score
            if confidence is None:
                confidence = DEFAULT_STRUCTURED_CONFIDENCE
            elapsed_ms = int((time.perf_counter() - start_time) * 1000)
            record.mark_completed(
                result,
                confidence=confidence,
                tokens_used=generation.tokens_used,
                processing_time_ms=elapsed_ms,
            )
        except Exception as e:
            elapsed_ms = int((time.perf_counter() - start_time) * 1000)
            record.mark_failed(str(e) or type(e).__name__, elapsed_ms)
            await self.analysis_store.update(record)
            logger.error(f"Analysis {record.id} for evidence {record.evidence_id} failed: {e}")
            raise

        await self.analysis_store.update(record)
        self._log_structured(
            "analysis_completed",
            analysis_id=record.id,
            evidence_id=record.evidence_id,
            confidence=round(confidence, 3),
            fallback=result.fallback,
            tokens_used=generation.tokens_used,
            processing_time_ms=elapsed_ms,
        )
        return record
