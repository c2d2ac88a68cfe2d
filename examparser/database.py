"""
SQLite Database Layer
=====================
SQLite-backed QuestionStore.
Runs, extracted questions and API call records are stored on disk.
Every read goes to the database file.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from .models import (
    ApiCallRecord,
    ExtractedQuestion,
    ExtractionRun,
    RunStatus,
)
from .store import QuestionStore

logger = logging.getLogger(__name__)

# Default database path: project_root/examparser.sqlite
_DEFAULT_DB_PATH = str(Path(__file__).parent.parent / "examparser.sqlite")


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get("EXAMPARSER_DB_PATH", _DEFAULT_DB_PATH)


@contextmanager
def get_connection(db_path: str = None):
    """
    Context manager for database connections.
    Ensures proper commit/rollback and connection cleanup.
    """
    db_path = db_path or get_db_path()
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str = None):
    """
    Initialize the database schema.
    Idempotent: every statement uses IF NOT EXISTS.
    """
    db_path = db_path or get_db_path()
    logger.info(f"Initializing database at: {db_path}")

    with get_connection(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS extraction_runs (
                run_id TEXT PRIMARY KEY,
                source_document_id TEXT NOT NULL,
                progress_percent INTEGER DEFAULT 0,
                current_step TEXT DEFAULT '',
                status TEXT DEFAULT 'pending',
                error_message TEXT DEFAULT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS questions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                question_number INTEGER NOT NULL,
                question_type TEXT DEFAULT 'single_correct',
                question_text TEXT DEFAULT '',
                option_a TEXT,
                option_b TEXT,
                option_c TEXT,
                option_d TEXT,
                correct_answer TEXT DEFAULT 'PENDING',
                subject TEXT DEFAULT '',
                topic TEXT DEFAULT '',
                difficulty TEXT DEFAULT 'medium',
                has_diagram INTEGER DEFAULT 0,
                diagram_image_ref TEXT,
                exam_year INTEGER,
                exam_type TEXT,
                is_active INTEGER DEFAULT 1,
                is_placeholder INTEGER DEFAULT 0,
                payload_json TEXT NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(run_id) REFERENCES extraction_runs(run_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS api_calls (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_document_id TEXT,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                operation_type TEXT NOT NULL,
                input_tokens INTEGER DEFAULT 0,
                output_tokens INTEGER DEFAULT 0,
                total_tokens INTEGER DEFAULT 0,
                estimated_cost_usd REAL DEFAULT 0,
                page_number INTEGER,
                attempt INTEGER DEFAULT 1,
                success INTEGER DEFAULT 1,
                error_message TEXT,
                latency_ms INTEGER DEFAULT 0,
                created_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_questions_run_id
                ON questions(run_id);
            CREATE INDEX IF NOT EXISTS idx_questions_run_number
                ON questions(run_id, question_number);
            CREATE INDEX IF NOT EXISTS idx_api_calls_document
                ON api_calls(source_document_id);
        """)

    logger.info("Database schema initialized successfully")


# ─── Run CRUD ─────────────────────────────────────────────────────────────────


def insert_run(run: ExtractionRun, db_path: str = None):
    with get_connection(db_path) as conn:
        conn.execute(
            """INSERT INTO extraction_runs
               (run_id, source_document_id, progress_percent, current_step,
                status, error_message)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (run.run_id, run.source_document_id, run.progress_percent,
             run.current_step, run.status.value, run.error_message),
        )
        logger.info(f"Inserted run {run.run_id} for {run.source_document_id!r}")


def get_run(run_id: str, db_path: str = None) -> Optional[dict]:
    """Fetch a single run by ID."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM extraction_runs WHERE run_id = ?", (run_id,)
        ).fetchone()
        return dict(row) if row else None


def update_run(run_id: str, db_path: str = None, **fields) -> bool:
    """Update run fields. Returns True if row was found."""
    allowed = {"progress_percent", "current_step", "status", "error_message"}
    fields = {k: v for k, v in fields.items() if k in allowed}
    if not fields:
        return False

    set_clause = ", ".join(f"{k} = ?" for k in fields)
    values = list(fields.values()) + [run_id]

    with get_connection(db_path) as conn:
        cursor = conn.execute(
            f"UPDATE extraction_runs SET {set_clause}, "
            f"updated_at = CURRENT_TIMESTAMP WHERE run_id = ?",
            values,
        )
        return cursor.rowcount > 0


# ─── Question CRUD ────────────────────────────────────────────────────────────


def insert_question(run_id: str, q: ExtractedQuestion, db_path: str = None) -> int:
    """Insert one question. Returns the new row id."""
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            """INSERT INTO questions
               (run_id, question_number, question_type, question_text,
                option_a, option_b, option_c, option_d, correct_answer,
                subject, topic, difficulty, has_diagram, diagram_image_ref,
                exam_year, exam_type, is_active, is_placeholder, payload_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (run_id, q.question_number, q.question_type.value, q.text,
             q.option_a, q.option_b, q.option_c, q.option_d, q.correct_answer,
             q.subject, q.topic, q.difficulty.value, int(q.has_diagram),
             q.diagram_image_ref, q.exam_year, q.exam_type,
             int(q.is_active), int(q.is_placeholder),
             json.dumps(q.model_dump(exclude={"anomaly_score"}), default=str)),
        )
        return cursor.lastrowid


def get_questions(run_id: str, db_path: str = None) -> list[dict]:
    """All stored question payloads of a run, by question number."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT payload_json FROM questions WHERE run_id = ? "
            "ORDER BY question_number, id",
            (run_id,),
        ).fetchall()
        return [json.loads(r["payload_json"]) for r in rows]


def count_run_questions(run_id: str, active_only: bool = False, db_path: str = None) -> int:
    """Return the count of questions stored for a run."""
    sql = "SELECT COUNT(*) as cnt FROM questions WHERE run_id = ?"
    if active_only:
        sql += " AND is_active = 1"
    with get_connection(db_path) as conn:
        row = conn.execute(sql, (run_id,)).fetchone()
        return row["cnt"] if row else 0


# ─── API Call Ledger ──────────────────────────────────────────────────────────


def insert_api_call(record: ApiCallRecord, db_path: str = None):
    with get_connection(db_path) as conn:
        conn.execute(
            """INSERT INTO api_calls
               (source_document_id, provider, model, operation_type,
                input_tokens, output_tokens, total_tokens, estimated_cost_usd,
                page_number, attempt, success, error_message, latency_ms,
                created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (record.source_document_id, record.provider, record.model,
             record.operation_type, record.input_tokens, record.output_tokens,
             record.total_tokens, record.estimated_cost_usd, record.page_number,
             record.attempt, int(record.success), record.error_message,
             record.latency_ms, record.created_at),
        )


def get_api_calls(source_document_id: str, db_path: str = None) -> list[ApiCallRecord]:
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM api_calls WHERE source_document_id = ? ORDER BY id",
            (source_document_id,),
        ).fetchall()
    records = []
    for row in rows:
        data = dict(row)
        data.pop("id", None)
        data["success"] = bool(data["success"])
        records.append(ApiCallRecord(**data))
    return records


# ─── Store Adapter ────────────────────────────────────────────────────────────


class SQLiteStore(QuestionStore):
    """QuestionStore on top of the module-level SQLite helpers."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_db_path()
        init_db(self.db_path)

    def create_run(self, run: ExtractionRun) -> ExtractionRun:
        insert_run(run, db_path=self.db_path)
        return run

    def get_run(self, run_id: str) -> Optional[ExtractionRun]:
        row = get_run(run_id, db_path=self.db_path)
        if not row:
            return None
        return ExtractionRun(
            run_id=row["run_id"],
            source_document_id=row["source_document_id"],
            progress_percent=row["progress_percent"] or 0,
            current_step=row["current_step"] or "",
            status=RunStatus(row["status"]),
            error_message=row["error_message"],
        )

    def update_progress(self, run_id: str, percent: int, step: str):
        update_run(
            run_id,
            db_path=self.db_path,
            progress_percent=max(0, min(100, int(percent))),
            current_step=step,
        )

    def mark_status(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ):
        update_run(
            run_id,
            db_path=self.db_path,
            status=status.value,
            error_message=error,
        )

    def insert_question(self, run_id: str, question: ExtractedQuestion):
        insert_question(run_id, question, db_path=self.db_path)

    def list_questions(self, run_id: str) -> list[ExtractedQuestion]:
        return [
            ExtractedQuestion.model_validate(payload)
            for payload in get_questions(run_id, db_path=self.db_path)
        ]

    def record_api_call(self, record: ApiCallRecord):
        insert_api_call(record, db_path=self.db_path)
