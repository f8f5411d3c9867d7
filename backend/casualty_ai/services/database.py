"""
SQLite persistence for analysis records, casualty reports and conversations.
Each row keeps a few indexed columns next to the full JSON document.
"""
import json
import logging
import math
import os
from datetime import datetime, timezone
from typing import List, Optional

import aiosqlite

from casualty_ai.config import settings
from casualty_ai.errors import NotFoundError
from casualty_ai.models.schemas import (
    AnalysisRecord,
    CasualtyReport,
    CasualtyReportPage,
    Conversation,
    utcnow,
)
from casualty_ai.services.stores import as_utc, normalize_page_args

logger = logging.getLogger(__name__)

# Singleton instance
_db_instance: Optional["DatabaseService"] = None


def _iso(value: datetime) -> str:
    """Fixed-width UTC timestamp so TEXT columns sort chronologically."""
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class DatabaseService:
    """Async SQLite database service."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or settings.database_path
        self._db: Optional[aiosqlite.Connection] = None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("DatabaseService.initialize() has not been awaited")
        return self._db

    async def initialize(self):
        """Create database directory and tables."""
        directory = os.path.dirname(self.db_path)
        if directory and self.db_path != ":memory:":
            os.makedirs(directory, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._create_tables()
        logger.info(f"SQLite database initialized at {self.db_path}")

    async def _create_tables(self):
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS analysis_records (
                id TEXT PRIMARY KEY,
                evidence_id TEXT NOT NULL,
                report_id TEXT,
                incident_id TEXT,
                status TEXT NOT NULL,
                document TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_analysis_report ON analysis_records(report_id);
            CREATE INDEX IF NOT EXISTS idx_analysis_incident ON analysis_records(incident_id);
            CREATE INDEX IF NOT EXISTS idx_analysis_evidence ON analysis_records(evidence_id);

            CREATE TABLE IF NOT EXISTS casualty_reports (
                id TEXT PRIMARY KEY,
                report_id TEXT NOT NULL UNIQUE,
                incident_id TEXT NOT NULL,
                generated_at TEXT NOT NULL,
                document TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_casualty_incident ON casualty_reports(incident_id);

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                report_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                document TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversation_user ON conversations(user_id);
            CREATE INDEX IF NOT EXISTS idx_conversation_report ON conversations(report_id);
        """)
        await self._db.commit()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None

    async def health_check(self) -> bool:
        try:
            async with self.connection.execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except (aiosqlite.Error, RuntimeError) as e:
            logger.warning(f"SQLite health check failed: {e}")
            return False


class SQLiteAnalysisStore:
    """AnalysisStore backed by the analysis_records table."""

    def __init__(self, database: DatabaseService):
        self.database = database

    @staticmethod
    def _row_to_record(row) -> AnalysisRecord:
        return AnalysisRecord.model_validate(json.loads(row["document"]))

    async def _select(self, where: str, value: str) -> List[AnalysisRecord]:
        records = []
        async with self.database.connection.execute(
            f"SELECT document FROM analysis_records WHERE {where} = ? ORDER BY created_at DESC",
            (value,),
        ) as cursor:
            async for row in cursor:
                records.append(self._row_to_record(row))
        return records

    async def get(self, analysis_id: str) -> Optional[AnalysisRecord]:
        async with self.database.connection.execute(
            "SELECT document FROM analysis_records WHERE id = ?", (analysis_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def find_by_report(self, report_id: str) -> List[AnalysisRecord]:
        return await self._select("report_id", report_id)

    async def find_by_incident(self, incident_id: str) -> List[AnalysisRecord]:
        return await self._select("incident_id", incident_id)

    async def find_by_evidence(self, evidence_id: str) -> List[AnalysisRecord]:
        return await self._select("evidence_id", evidence_id)

    async def _write(self, record: AnalysisRecord):
        db = self.database.connection
        await db.execute(
            """INSERT OR REPLACE INTO analysis_records
               (id, evidence_id, report_id, incident_id, status, document, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.evidence_id,
                record.report_id,
                record.incident_id,
                record.status.value,
                record.model_dump_json(),
                _iso(record.created_at),
                _iso(record.updated_at),
            ),
        )
        await db.commit()

    async def save(self, record: AnalysisRecord) -> AnalysisRecord:
        await self._write(record)
        return record

    async def update(self, record: AnalysisRecord) -> AnalysisRecord:
        async with self.database.connection.execute(
            "SELECT 1 FROM analysis_records WHERE id = ?", (record.id,)
        ) as cursor:
            if await cursor.fetchone() is None:
                raise NotFoundError("analysis", record.id)
        record.updated_at = utcnow()
        await self._write(record)
        return record


class SQLiteCasualtyReportStore:
    """CasualtyReportStore backed by the casualty_reports table.

    report_id is UNIQUE, so concurrent syntheses for the same report collapse
    into one row; the first writer's id and created_at survive every update.
    """

    def __init__(self, database: DatabaseService):
        self.database = database

    @staticmethod
    def _row_to_report(row) -> CasualtyReport:
        data = json.loads(row["document"])
        data["id"] = row["id"]
        data["created_at"] = row["created_at"]
        data["updated_at"] = row["updated_at"]
        return CasualtyReport.model_validate(data)

    async def find_by_report_id(self, report_id: str) -> Optional[CasualtyReport]:
        async with self.database.connection.execute(
            "SELECT * FROM casualty_reports WHERE report_id = ?", (report_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_report(row) if row else None

    async def upsert_by_report_id(self, report: CasualtyReport) -> CasualtyReport:
        db = self.database.connection
        now = _iso(utcnow())
        await db.execute(
            """INSERT INTO casualty_reports
               (id, report_id, incident_id, generated_at, document, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(report_id) DO UPDATE SET
                   incident_id = excluded.incident_id,
                   generated_at = excluded.generated_at,
                   document = excluded.document,
                   updated_at = excluded.updated_at""",
            (
                report.id,
                report.report_id,
                report.incident_id,
                _iso(report.generated_at),
                report.model_dump_json(),
                _iso(report.created_at),
                now,
            ),
        )
        await db.commit()
        stored = await self.find_by_report_id(report.report_id)
        if stored is None:
            raise NotFoundError("casualty report", report.report_id)
        return stored

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

        clauses, params = [], []
        if incident_id:
            clauses.append("incident_id = ?")
            params.append(incident_id)
        if date_from:
            clauses.append("generated_at >= ?")
            params.append(_iso(date_from))
        if date_to:
            clauses.append("generated_at <= ?")
            params.append(_iso(date_to))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        db = self.database.connection
        async with db.execute(f"SELECT COUNT(*) FROM casualty_reports {where}", params) as cursor:
            row = await cursor.fetchone()
            total = row[0] if row else 0

        # sort_by is restricted to a fixed column list by normalize_page_args
        direction = "DESC" if descending else "ASC"
        items = []
        async with db.execute(
            f"SELECT * FROM casualty_reports {where} ORDER BY {sort_by} {direction} LIMIT ? OFFSET ?",
            [*params, limit, (page - 1) * limit],
        ) as cursor:
            async for row in cursor:
                items.append(self._row_to_report(row))

        return CasualtyReportPage(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )


class SQLiteConversationStore:
    """ConversationStore backed by the conversations table."""

    def __init__(self, database: DatabaseService):
        self.database = database

    async def _select(self, where: str, value: str) -> List[Conversation]:
        conversations = []
        async with self.database.connection.execute(
            f"SELECT document FROM conversations WHERE {where} = ? ORDER BY updated_at DESC",
            (value,),
        ) as cursor:
            async for row in cursor:
                conversations.append(Conversation.model_validate_json(row["document"]))
        return conversations

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        async with self.database.connection.execute(
            "SELECT document FROM conversations WHERE id = ?", (conversation_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return Conversation.model_validate_json(row["document"]) if row else None

    async def save(self, conversation: Conversation) -> Conversation:
        db = self.database.connection
        await db.execute(
            """INSERT OR REPLACE INTO conversations
               (id, report_id, user_id, status, document, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                conversation.id,
                conversation.report_id,
                conversation.user_id,
                conversation.status.value,
                conversation.model_dump_json(),
                _iso(conversation.created_at),
                _iso(conversation.updated_at),
            ),
        )
        await db.commit()
        return conversation

    async def find_by_user(self, user_id: str) -> List[Conversation]:
        return await self._select("user_id", user_id)

    async def find_by_report(self, report_id: str) -> List[Conversation]:
        return await self._select("report_id", report_id)


def get_database() -> DatabaseService:
    """Get or create the singleton DatabaseService."""
    global _db_instance
    if _db_instance is None:
        _db_instance = DatabaseService()
    return _db_instance
