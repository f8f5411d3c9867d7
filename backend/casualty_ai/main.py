"""
Composition root: configures logging and wires one shared model client and
the stores into ready-to-use pipeline services.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from casualty_ai.config import Settings, settings as default_settings
from casualty_ai.services.aggregator import aggregator
from casualty_ai.services.batch_analyzer import BatchAnalyzer
from casualty_ai.services.casualty_report import CasualtyReportSynthesizer
from casualty_ai.services.conversation import ConversationService
from casualty_ai.services.database import (
    DatabaseService,
    SQLiteAnalysisStore,
    SQLiteCasualtyReportStore,
    SQLiteConversationStore,
)
from casualty_ai.services.evidence_analyzer import EvidenceAnalyzer
from casualty_ai.services.gemini_client import GeminiClient
from casualty_ai.services.report_enhancement import ReportEnhancer
from casualty_ai.services.stores import (
    AnalysisStore,
    CasualtyReportStore,
    ConversationStore,
    EvidenceDirectory,
    InMemoryConversationStore,
    ReportDirectory,
)

logger = logging.getLogger(__name__)


def configure_logging(config: Optional[Settings] = None):
    config = config or default_settings
    level = logging.DEBUG if config.debug else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@dataclass
class Pipeline:
    """The wired services plus the resources they share."""
    settings: Settings
    model_client: GeminiClient
    analysis_store: AnalysisStore
    report_store: CasualtyReportStore
    evidence_analyzer: EvidenceAnalyzer
    batch_analyzer: BatchAnalyzer
    synthesizer: CasualtyReportSynthesizer
    enhancer: ReportEnhancer
    conversations: ConversationService
    database: Optional[DatabaseService] = None

    async def close(self):
        if self.database is not None:
            await self.database.close()
        logger.info("Casualty analysis pipeline closed")


def build_pipeline(
    reports: ReportDirectory,
    evidence: EvidenceDirectory,
    analysis_store: AnalysisStore,
    report_store: CasualtyReportStore,
    config: Optional[Settings] = None,
    model_client: Optional[GeminiClient] = None,
    database: Optional[DatabaseService] = None,
    conversation_store: Optional[ConversationStore] = None,
) -> Pipeline:
    """Wire services around caller-supplied stores and collaborators."""
    config = config or default_settings
    model_client = model_client or GeminiClient(config)
    evidence_analyzer = EvidenceAnalyzer(model_client, analysis_store)
    batch_analyzer = BatchAnalyzer(evidence_analyzer, config)
    return Pipeline(
        settings=config,
        model_client=model_client,
        analysis_store=analysis_store,
        report_store=report_store,
        evidence_analyzer=evidence_analyzer,
        batch_analyzer=batch_analyzer,
        synthesizer=CasualtyReportSynthesizer(
            reports,
            evidence,
            analysis_store,
            report_store,
            batch_analyzer,
            aggregator=aggregator,
            config=config,
        ),
        enhancer=ReportEnhancer(reports, analysis_store, model_client, aggregator=aggregator),
        conversations=ConversationService(
            reports,
            evidence,
            analysis_store,
            conversation_store or InMemoryConversationStore(),
            model_client,
            aggregator=aggregator,
        ),
        database=database,
    )


async def create_pipeline(
    reports: ReportDirectory,
    evidence: EvidenceDirectory,
    config: Optional[Settings] = None,
    model_client: Optional[GeminiClient] = None,
) -> Pipeline:
    """Start the pipeline on the SQLite stores at settings.database_path."""
    config = config or default_settings
    logger.info("Starting casualty analysis pipeline")
    logger.info(f"Environment: {config.environment}")
    logger.info(f"Debug mode: {config.debug}")

    # Validate configuration on startup
    config.validate_config()

    db = DatabaseService(config.database_path)
    await db.initialize()
    logger.info("SQLite database initialized")

    return build_pipeline(
        reports,
        evidence,
        SQLiteAnalysisStore(db),
        SQLiteCasualtyReportStore(db),
        conversation_store=SQLiteConversationStore(db),
        config=config,
        model_client=model_client,
        database=db,
    )
