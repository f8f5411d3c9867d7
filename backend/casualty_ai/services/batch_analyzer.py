"""
Batch analysis: fans EvidenceAnalyzer out over many evidence items.

Items run concurrently (bounded by a semaphore) and independently; a failed
item becomes a failure outcome instead of cancelling its siblings. Nothing is
retried at this layer.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from casualty_ai.config import Settings, settings as default_settings
from casualty_ai.models.schemas import AnalysisRecord, BatchItem
from casualty_ai.services.evidence_analyzer import EvidenceAnalyzer
from casualty_ai.services.identifiers import validate_object_id

logger = logging.getLogger(__name__)


@dataclass
class AnalysisOutcome:
    """Result of one batch item: a record on success, the error on failure."""
    evidence_id: str
    record: Optional[AnalysisRecord] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__


@dataclass
class BatchResult:
    outcomes: List[AnalysisOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)

    @property
    def records(self) -> List[AnalysisRecord]:
        return [o.record for o in self.outcomes if o.record is not None]

    def __len__(self) -> int:
        return len(self.outcomes)


class BatchAnalyzer:
    """Concurrent, failure-isolated analysis of a list of evidence items."""

    def __init__(self, analyzer: EvidenceAnalyzer, config: Optional[Settings] = None):
        self.analyzer = analyzer
        self.settings = config or default_settings

    async def batch_analyze(
        self,
        items: Sequence[Union[BatchItem, dict]],
        report_id: Optional[str] = None,
        incident_id: Optional[str] = None,
    ) -> BatchResult:
        """Analyze every item; outcomes come back in input order."""
        # Malformed shared ids are fatal before any work starts
        if report_id is not None:
            report_id = validate_object_id(report_id, "report_id")
        if incident_id is not None:
            incident_id = validate_object_id(incident_id, "incident_id")

        batch = [item if isinstance(item, BatchItem) else BatchItem.model_validate(item) for item in items]
        semaphore = asyncio.Semaphore(self.settings.batch_max_concurrency)

        async def _analyze(item: BatchItem) -> AnalysisRecord:
            async with semaphore:
                return await self.analyzer.analyze_evidence(
                    evidence_id=item.evidence_id,
                    kind=item.kind,
                    media_locator=item.media_locator,
                    prompt=item.prompt,
                    report_id=report_id,
                    incident_id=incident_id,
                )

        results = await asyncio.gather(*[_analyze(item) for item in batch], return_exceptions=True)

        outcomes = []
        for item, result in zip(batch, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    # CancelledError / KeyboardInterrupt are not per-item failures
                    raise result
                logger.warning(f"Batch item {item.evidence_id} failed: {result}")
                outcomes.append(AnalysisOutcome(evidence_id=item.evidence_id, error=result))
            else:
                outcomes.append(AnalysisOutcome(evidence_id=item.evidence_id, record=result))

        batch_result = BatchResult(outcomes=outcomes)
        logger.info(json.dumps({
            "event": "batch_completed",
            "report_id": report_id,
            "incident_id": incident_id,
            "total": len(batch_result),
            "succeeded": batch_result.succeeded,
            "failed": batch_result.failed,
        }))
        return batch_result
