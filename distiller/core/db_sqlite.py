"""
SQLite job storage for KnowledgeDistiller.
Thread-safe via check_same_thread=False + explicit locking.
"""

import json
import sqlite3
import logging
import threading
from datetime import datetime
from pathlib import Path

from distiller.core.constants import DB_PATH
from distiller.core.models import Job, JobFailure, LogEntry

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    source_kind TEXT NOT NULL,
    source_ref TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    processing_step TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    raw_content TEXT,
    result_content TEXT,
    error_kind TEXT,
    error_message TEXT,
    cancel_requested INTEGER DEFAULT 0,
    provider TEXT,
    model TEXT,
    config_version INTEGER,
    logs TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
"""

_COLUMNS = (
    'id', 'source_kind', 'source_ref', 'status', 'processing_step',
    'created_at', 'started_at', 'completed_at', 'raw_content', 'result_content',
    'error_kind', 'error_message', 'cancel_requested', 'provider', 'model',
    'config_version', 'logs',
)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """SQLite persistence for job records."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _job_to_row(job: Job) -> tuple:
        with job._log_lock:
            logs = json.dumps([entry.to_dict() for entry in job.logs])
        return (
            job.id, job.source_kind, job.source_ref, job.status, job.processing_step,
            job.created_at.isoformat(),
            job.started_at.isoformat() if job.started_at else None,
            job.completed_at.isoformat() if job.completed_at else None,
            job.raw_content, job.result_content,
            job.error.kind if job.error else None,
            job.error.message if job.error else None,
            1 if job.cancel_requested else 0,
            job.provider, job.model, job.config_version,
            logs,
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        job = Job(
            id=row['id'],
            source_kind=row['source_kind'],
            source_ref=row['source_ref'],
            status=row['status'],
            processing_step=row['processing_step'],
            created_at=_parse_dt(row['created_at']),
            started_at=_parse_dt(row['started_at']),
            completed_at=_parse_dt(row['completed_at']),
            logs=[LogEntry.from_dict(d) for d in json.loads(row['logs'] or '[]')],
            raw_content=row['raw_content'],
            result_content=row['result_content'],
            error=(JobFailure(row['error_kind'], row['error_message'] or '')
                   if row['error_kind'] else None),
            provider=row['provider'],
            model=row['model'],
            config_version=row['config_version'],
        )
        if row['cancel_requested']:
            job.request_cancel()
        return job

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, job: Job):
        placeholders = ', '.join('?' for _ in _COLUMNS)
        with self._lock:
            self.conn.execute(
                f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                self._job_to_row(job),
            )
            self.conn.commit()

    def update_job(self, job: Job):
        """Write the whole record; inserts it if missing."""
        placeholders = ', '.join('?' for _ in _COLUMNS)
        with self._lock:
            self.conn.execute(
                f"INSERT OR REPLACE INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                self._job_to_row(job),
            )
            self.conn.commit()

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self) -> list[Job]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC"
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def get_jobs_by_status(self, *statuses: str) -> list[Job]:
        if not statuses:
            return []
        marks = ', '.join('?' for _ in statuses)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM jobs WHERE status IN ({marks}) ORDER BY created_at ASC",
                statuses,
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def delete_job(self, job_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self.conn.commit()
