"""
Tests for concurrent batch analysis.
"""

import asyncio

import pytest

from casualty_ai.errors import InvalidIdentifierError, UpstreamUnavailableError
from casualty_ai.models.schemas import AnalysisStatus, BatchItem
from casualty_ai.services.batch_analyzer import BatchAnalyzer
from casualty_ai.services.evidence_analyzer import EvidenceAnalyzer
from casualty_ai.services.gemini_client import GenerationResult, MediaPayload
from conftest import INCIDENT_ID, REPORT_ID, oid


def items(n: int):
    return [
        BatchItem(
            evidence_id=oid(0xE0 + i),
            kind="image",
            media_locator=f"https://media.example.org/evidence/{i}.jpg",
        )
        for i in range(1, n + 1)
    ]


class TestBatchAnalyze:
    """Tests for BatchAnalyzer.batch_analyze."""

    async def test_all_succeed(self, batch_analyzer, analysis_store):
        """Test a clean batch."""
        result = await batch_analyzer.batch_analyze(items(3), report_id=REPORT_ID, incident_id=INCIDENT_ID)

        assert len(result) == 3
        assert result.succeeded == 3
        assert result.failed == 0
        assert len(await analysis_store.find_by_report(REPORT_ID)) == 3

    async def test_middle_failure_does_not_suppress_siblings(self, batch_analyzer, model_client, analysis_store):
        """Test that item 2 failing leaves items 1 and 3 successful, in order."""
        model_client.fetch_failures["https://media.example.org/evidence/2.jpg"] = UpstreamUnavailableError(
            "Failed to fetch media from URL"
        )

        result = await batch_analyzer.batch_analyze(items(3), report_id=REPORT_ID)

        assert [o.evidence_id for o in result.outcomes] == [oid(0xE1), oid(0xE2), oid(0xE3)]
        assert [o.succeeded for o in result.outcomes] == [True, False, True]
        assert result.outcomes[1].record is None
        assert "Failed to fetch media" in result.outcomes[1].error_message
        assert (result.succeeded, result.failed) == (2, 1)

        stored = await analysis_store.find_by_report(REPORT_ID)
        assert len(stored) == 3
        assert sorted(r.status.value for r in stored) == ["completed", "completed", "failed"]

    async def test_order_preserved_when_completion_order_differs(self, analysis_store, test_settings):
        """Test that outcomes follow input order, not completion order."""

        class SlowFirstClient:
            async def fetch_media(self, locator):
                if locator.endswith("/1.jpg"):
                    await asyncio.sleep(0.02)
                return MediaPayload(data=b"x", mime_type="image/jpeg")

            async def generate(self, prompt, media=None):
                return GenerationResult(text='{"confidenceScore": 0.5}', tokens_used=1, model="m", latency_ms=1)

        batch = BatchAnalyzer(EvidenceAnalyzer(SlowFirstClient(), analysis_store), test_settings)
        result = await batch.batch_analyze(items(3))

        assert [o.evidence_id for o in result.outcomes] == [oid(0xE1), oid(0xE2), oid(0xE3)]
        assert all(o.succeeded for o in result.outcomes)

    async def test_invalid_item_id_is_a_failure_outcome(self, batch_analyzer):
        """Test that a malformed evidence id fails only its own item."""
        batch = items(2)
        batch.append(BatchItem(evidence_id="bogus", kind="image", media_locator="https://m/x.jpg"))

        result = await batch_analyzer.batch_analyze(batch)

        assert len(result) == 3
        assert isinstance(result.outcomes[2].error, InvalidIdentifierError)
        assert result.succeeded == 2

    async def test_invalid_shared_report_id_is_fatal(self, batch_analyzer, model_client):
        """Test that a malformed shared id aborts before any analysis."""
        with pytest.raises(InvalidIdentifierError):
            await batch_analyzer.batch_analyze(items(2), report_id="nope")
        assert model_client.fetch_calls == []

    async def test_accepts_plain_dicts(self, batch_analyzer):
        """Test that dict items are coerced into BatchItem."""
        result = await batch_analyzer.batch_analyze([
            {"evidence_id": oid(0xE9), "kind": "document", "media_locator": "https://m/r.pdf"},
        ])
        assert result.succeeded == 1
        assert result.records[0].status == AnalysisStatus.COMPLETED

    async def test_empty_batch(self, batch_analyzer):
        """Test that an empty batch returns no outcomes."""
        result = await batch_analyzer.batch_analyze([])
        assert len(result) == 0
        assert (result.succeeded, result.failed) == (0, 0)

    async def test_concurrency_is_bounded(self, analysis_store, test_settings):
        """Test that no more than batch_max_concurrency items run at once."""
        in_flight = 0
        peak = 0

        class CountingClient:
            async def fetch_media(self, locator):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return MediaPayload(data=b"x", mime_type="image/jpeg")

            async def generate(self, prompt, media=None):
                return GenerationResult(text="", tokens_used=0, model="m", latency_ms=0)

        batch = BatchAnalyzer(EvidenceAnalyzer(CountingClient(), analysis_store), test_settings)
        result = await batch.batch_analyze(items(6))

        assert result.succeeded == 6
        assert peak <= test_settings.batch_max_concurrency
