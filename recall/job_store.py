"""
Durable embedding job queue using SQLite.

One row per embeddable unit of text, keyed by a deterministic id
(`field:<rowId>:<column>`, `cycle:<cycleId>`, `session:<sessionId>`).
Re-creating a job for an existing id is a no-op, which is the only
de-duplication mechanism the pipeline needs.

Status only moves forward: pending -> processing -> done | error.
The exceptions are `retry_failed()` (explicit operator retry, resets an
error job to a fresh pending state in place) and `release_claims()` /
`recover_stale()` (claims left in processing by a crashed worker). The
scheduler releases orphaned claims once, before its first pass.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .errors import JobStoreError
from .types import (
    LEVEL_PRIORITY,
    Job,
    JobRequest,
    JobStatus,
    Level,
    format_utc,
    job_request,
    utc_now,
)

logger = logging.getLogger(__name__)

# Retention windows for cleanup()
DONE_RETENTION_DAYS = 7
ERROR_RETENTION_DAYS = 30

# Claims older than this are considered stale (worker crashed)
STALE_CLAIM_SECONDS = 600

_JOB_COLUMNS = """
    id, level, session_id, cycle_id, source_table, source_row_id,
    column_name, field_label, text, status, error_message, version,
    attempts, created_at, processed_at
"""

_LEVEL_ORDER = "CASE level " + " ".join(
    f"WHEN '{level.value}' THEN {priority}" for level, priority in LEVEL_PRIORITY.items()
) + " END"


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        level=Level(row["level"]),
        session_id=row["session_id"],
        cycle_id=row["cycle_id"],
        source_table=row["source_table"],
        source_row_id=row["source_row_id"],
        column_name=row["column_name"],
        field_label=row["field_label"],
        text=row["text"],
        status=JobStatus(row["status"]),
        error_message=row["error_message"],
        version=row["version"],
        attempts=row["attempts"] or 0,
        created_at=row["created_at"],
        processed_at=row["processed_at"],
    )


class JobStore:
    """
    SQLite-backed store of embedding jobs.

    Thread-safe: a single connection is shared across threads and every
    statement runs under a lock. The optional vector store is consulted by
    `create_job_safe()` so that units embedded in an earlier process (whose
    job row was already cleaned up) are not embedded again.
    """

    def __init__(self, db_path: Path, vector_store=None):
        """
        Args:
            db_path: Path to SQLite database file
            vector_store: Optional object with `exists(id) -> bool`
        """
        self._db_path = Path(db_path)
        self._vector_store = vector_store
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def attach_vector_store(self, vector_store) -> None:
        self._vector_store = vector_store

    @contextmanager
    def _db(self):
        """Hold the lock; SQLite failures surface as JobStoreError."""
        with self._lock:
            if self._conn is None:
                raise JobStoreError(f"Job store is closed: {self._db_path}")
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise JobStoreError(f"{self._db_path}: {e}") from e

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False,
                isolation_level=None,
            )
            self._create_schema()
        except sqlite3.Error as e:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            raise JobStoreError(f"Cannot open job store {self._db_path}: {e}") from e

    def _create_schema(self) -> None:
        self._conn.row_factory = sqlite3.Row

        # WAL lets the CLI read status while a worker is writing
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS embedding_jobs (
                id TEXT PRIMARY KEY,
                level TEXT NOT NULL,
                session_id TEXT NOT NULL,
                cycle_id TEXT,
                source_table TEXT NOT NULL,
                source_row_id TEXT NOT NULL,
                column_name TEXT,
                field_label TEXT,
                text TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                error_message TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                processed_at TEXT
            )
        """)
        self._migrate()
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status
            ON embedding_jobs(status, level, created_at)
        """)

    def _migrate(self) -> None:
        """Add columns introduced after the first schema."""
        cursor = self._conn.execute("PRAGMA table_info(embedding_jobs)")
        columns = {row[1] for row in cursor.fetchall()}

        if "attempts" not in columns:
            self._conn.execute(
                "ALTER TABLE embedding_jobs ADD COLUMN attempts INTEGER DEFAULT 0"
            )
        if "claimed_at" not in columns:
            self._conn.execute(
                "ALTER TABLE embedding_jobs ADD COLUMN claimed_at TEXT"
            )

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_job(self, request: JobRequest) -> str:
        """
        Insert a pending job for the request and return its id.

        If a job with the same id already exists, nothing changes.
        """
        job_id = request.job_id
        with self._db():
            self._conn.execute(f"""
                INSERT OR IGNORE INTO embedding_jobs ({_JOB_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', NULL, 1, 0, ?, NULL)
            """, (
                job_id,
                request.level.value,
                request.session_id,
                getattr(request, "cycle_id", None),
                request.source_table,
                request.source_row_id,
                getattr(request, "column_name", None),
                getattr(request, "field_label", None),
                request.text,
                utc_now(),
            ))
        return job_id

    def create(
        self,
        level: Level | str,
        session_id: str,
        source_table: str,
        source_row_id: str,
        text: str,
        *,
        cycle_id: str | None = None,
        column_name: str | None = None,
        field_label: str | None = None,
    ) -> str:
        """Flat-argument form of create_job()."""
        return self.create_job(job_request(
            level, session_id, source_table, source_row_id, text,
            cycle_id=cycle_id, column_name=column_name, field_label=field_label,
        ))

    def create_job_safe(self, request: JobRequest) -> str | None:
        """
        Create the job unless its unit is already queued or embedded.

        Returns the new job id, or None when a job row or a vector record
        with the same id already exists. Not atomic against concurrent
        callers; a duplicate is harmless since vector writes are upserts.
        """
        job_id = request.job_id
        if self.exists(job_id):
            logger.debug("Job %s already exists", job_id)
            return None
        if self._vector_store is not None:
            try:
                if self._vector_store.exists(job_id):
                    logger.debug("Vector %s already exists, skipping job", job_id)
                    return None
            except Exception as e:
                logger.warning("Vector existence check failed for %s: %s", job_id, e)
        return self.create_job(request)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, job_id: str) -> Job | None:
        with self._db():
            row = self._conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM embedding_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def exists(self, job_id: str) -> bool:
        with self._db():
            row = self._conn.execute(
                "SELECT 1 FROM embedding_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return row is not None

    def list_pending(self, limit: int = 50) -> list[Job]:
        """Pending jobs, field level first, then oldest first."""
        with self._db():
            rows = self._conn.execute(f"""
                SELECT {_JOB_COLUMNS} FROM embedding_jobs
                WHERE status = 'pending'
                ORDER BY {_LEVEL_ORDER}, created_at ASC, rowid ASC
                LIMIT ?
            """, (limit,)).fetchall()
        return [_row_to_job(r) for r in rows]

    def list_failed(self, limit: int = 100) -> list[Job]:
        with self._db():
            rows = self._conn.execute(f"""
                SELECT {_JOB_COLUMNS} FROM embedding_jobs
                WHERE status = 'error'
                ORDER BY created_at ASC
                LIMIT ?
            """, (limit,)).fetchall()
        return [_row_to_job(r) for r in rows]

    def counts(self) -> dict[str, int]:
        """Job counts by status plus total."""
        with self._db():
            rows = self._conn.execute(
                "SELECT status, COUNT(*) FROM embedding_jobs GROUP BY status"
            ).fetchall()
        by_status = {row[0]: row[1] for row in rows}
        result = {s.value: by_status.get(s.value, 0) for s in JobStatus}
        result["total"] = sum(by_status.values())
        return result

    def statistics(self) -> dict:
        """Breakdown by level and status, plus queue age and retry depth."""
        with self._db():
            rows = self._conn.execute("""
                SELECT level, status, COUNT(*) FROM embedding_jobs
                GROUP BY level, status
            """).fetchall()
            summary = self._conn.execute("""
                SELECT
                    MIN(CASE WHEN status = 'pending' THEN created_at END),
                    MAX(attempts)
                FROM embedding_jobs
            """).fetchone()
        by_level: dict[str, dict[str, int]] = {
            level.value: {s.value: 0 for s in JobStatus} for level in Level
        }
        for level, status, count in rows:
            by_level.setdefault(level, {})[status] = count
        return {
            "by_level": by_level,
            "oldest_pending": summary[0],
            "max_attempts": summary[1] or 0,
            "db_path": str(self._db_path),
        }

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _update(self, sql: str, params: tuple) -> bool:
        with self._db():
            cursor = self._conn.execute(sql, params)
        return cursor.rowcount > 0

    def mark_processing(self, job_id: str) -> bool:
        """pending -> processing. Returns False if the job was not pending."""
        changed = self._update("""
            UPDATE embedding_jobs
            SET status = 'processing', claimed_at = ?
            WHERE id = ? AND status = 'pending'
        """, (utc_now(), job_id))
        if not changed:
            logger.debug("Job %s not claimable", job_id)
        return changed

    def record_attempt(self, job_id: str, error: str | None = None) -> None:
        """Count a provider attempt on a processing job, keeping its last error."""
        self._update("""
            UPDATE embedding_jobs
            SET attempts = attempts + 1,
                error_message = COALESCE(?, error_message)
            WHERE id = ? AND status = 'processing'
        """, (error, job_id))

    def mark_done(self, job_id: str) -> bool:
        return self._update("""
            UPDATE embedding_jobs
            SET status = 'done', processed_at = ?, error_message = NULL,
                claimed_at = NULL
            WHERE id = ? AND status = 'processing'
        """, (utc_now(), job_id))

    def mark_error(self, job_id: str, message: str) -> bool:
        changed = self._update("""
            UPDATE embedding_jobs
            SET status = 'error', processed_at = ?, error_message = ?,
                claimed_at = NULL
            WHERE id = ? AND status = 'processing'
        """, (utc_now(), message, job_id))
        if changed:
            logger.info("Job %s failed: %s", job_id, message)
        return changed

    def retry_failed(self, job_ids: list[str] | None = None) -> int:
        """Reset error jobs to a fresh pending state. Returns count reset."""
        sql = """
            UPDATE embedding_jobs
            SET status = 'pending', error_message = NULL, attempts = 0,
                processed_at = NULL, claimed_at = NULL
            WHERE status = 'error'
        """
        params: tuple = ()
        if job_ids:
            sql += f" AND id IN ({','.join('?' * len(job_ids))})"
            params = tuple(job_ids)
        with self._db():
            count = self._conn.execute(sql, params).rowcount
        if count:
            logger.info("Reset %d failed jobs to pending", count)
        return count

    def recover_stale(
        self, max_age_seconds: float = STALE_CLAIM_SECONDS, now: datetime | None = None,
    ) -> int:
        """Return processing jobs whose claim is older than max_age_seconds to pending."""
        now = now or datetime.now(timezone.utc)
        cutoff = format_utc(now - timedelta(seconds=max_age_seconds))
        with self._db():
            recovered = self._conn.execute("""
                UPDATE embedding_jobs
                SET status = 'pending', claimed_at = NULL
                WHERE status = 'processing'
                  AND (claimed_at IS NULL OR claimed_at < ?)
            """, (cutoff,)).rowcount
        if recovered:
            logger.info("Recovered %d stale processing jobs", recovered)
        return recovered

    def release_claims(self) -> int:
        """
        Return every processing job to pending, regardless of claim age.

        Only safe when no worker is running: with one worker per process,
        any claim present before that worker starts is orphaned.
        """
        with self._db():
            released = self._conn.execute("""
                UPDATE embedding_jobs
                SET status = 'pending', claimed_at = NULL
                WHERE status = 'processing'
            """).rowcount
        if released:
            logger.info("Released %d orphaned processing jobs", released)
        return released

    def cleanup(self, now: datetime | None = None) -> dict[str, int]:
        """
        Delete done jobs older than 7 days and error jobs older than 30 days.

        Done jobs age from when they were processed, error jobs from when
        they were created.
        """
        now = now or datetime.now(timezone.utc)
        done_cutoff = format_utc(now - timedelta(days=DONE_RETENTION_DAYS))
        error_cutoff = format_utc(now - timedelta(days=ERROR_RETENTION_DAYS))
        with self._db():
            completed = self._conn.execute("""
                DELETE FROM embedding_jobs
                WHERE status = 'done'
                  AND COALESCE(processed_at, created_at) < ?
            """, (done_cutoff,)).rowcount
            errors = self._conn.execute("""
                DELETE FROM embedding_jobs
                WHERE status = 'error' AND created_at < ?
            """, (error_cutoff,)).rowcount
        if completed or errors:
            logger.info("Cleanup removed %d done and %d error jobs", completed, errors)
        return {"completed_removed": completed, "errors_removed": errors}

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
