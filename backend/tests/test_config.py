"""
Tests for settings validation and pipeline wiring.
"""

import logging

import pytest
from pydantic import ValidationError

from casualty_ai.config import Settings
from casualty_ai.main import build_pipeline, configure_logging, create_pipeline
from casualty_ai.services.database import SQLiteAnalysisStore, SQLiteConversationStore
from casualty_ai.services.stores import InMemoryAnalysisStore, InMemoryCasualtyReportStore
from conftest import REPORT_ID


class TestSettings:
    """Tests for Settings validators."""

    def test_defaults(self):
        config = Settings(google_api_key="")
        assert config.batch_max_concurrency == 4
        assert config.analysis_visibility_max_attempts == 20

    @pytest.mark.parametrize("field,value", [
        ("gemini_temperature", 1.5),
        ("gemini_top_p", -0.1),
        ("batch_max_concurrency", 0),
        ("gemini_timeout_seconds", -1),
        ("analysis_visibility_max_attempts", 0),
    ])
    def test_invalid_values(self, field, value):
        """Test that out-of-range settings are rejected."""
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_log_level_normalized(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_validate_config_warnings(self):
        """Test startup warnings for missing key and production debug."""
        warnings = Settings(google_api_key="", environment="production", debug=True).validate_config()

        assert len(warnings) == 2
        assert any("GOOGLE_API_KEY" in w for w in warnings)

    def test_validate_config_clean(self):
        assert Settings(google_api_key="key").validate_config() == []


class TestPipeline:
    """Tests for pipeline composition."""

    def test_build_pipeline_shares_one_model_client(
        self, reports, evidence_directory, model_client, test_settings
    ):
        """Test that every service uses the same model client and stores."""
        analysis_store = InMemoryAnalysisStore()
        pipeline = build_pipeline(
            reports,
            evidence_directory,
            analysis_store,
            InMemoryCasualtyReportStore(),
            config=test_settings,
            model_client=model_client,
        )

        assert pipeline.evidence_analyzer.model_client is model_client
        assert pipeline.enhancer.model_client is model_client
        assert pipeline.batch_analyzer.analyzer is pipeline.evidence_analyzer
        assert pipeline.synthesizer.analysis_store is analysis_store
        assert pipeline.conversations.model_client is model_client
        assert pipeline.conversations.analysis_store is analysis_store

    async def test_create_pipeline_on_sqlite(self, reports, evidence_directory, model_client, test_settings):
        """Test an end-to-end synthesis on the SQLite stores."""
        pipeline = await create_pipeline(reports, evidence_directory, config=test_settings, model_client=model_client)
        try:
            assert isinstance(pipeline.analysis_store, SQLiteAnalysisStore)
            assert isinstance(pipeline.conversations.conversation_store, SQLiteConversationStore)
            first = await pipeline.synthesizer.synthesize_casualty_report(REPORT_ID)
            second = await pipeline.synthesizer.synthesize_casualty_report(REPORT_ID)

            assert first.reused is False
            assert second.reused is True
            assert second.report.id == first.report.id
            assert (await pipeline.synthesizer.get_casualty_report(REPORT_ID)).id == first.report.id
        finally:
            await pipeline.close()

    def test_configure_logging_level(self, monkeypatch):
        """Test that debug mode selects DEBUG logging."""
        calls = {}
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.update(kwargs))

        configure_logging(Settings(debug=True))
        assert calls["level"] == logging.DEBUG

        configure_logging(Settings(log_level="warning"))
        assert calls["level"] == logging.WARNING
