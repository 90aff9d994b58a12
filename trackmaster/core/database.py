"""
Thread-safe SQLite job store for trackmaster.

The store plays two roles for the batch commands: it is the job source
(cursor-paginated listing in ascending id order) and the result sink
(full overwrite of a job by id).

Schema:
    schema_version:  Single row with DATABASE_VERSION
    jobs:            One row per track (source, processing state, results)

Saving is a plain overwrite. There is no version column, so two workers
that fetch, mutate and save the same job concurrently race and the last
save wins.

Usage:
    db = Database(config.database.path)

    db.add_job(Job(id=new_job_id(), source="https://cdn/raw.mp3"))

    after = ""
    while page := db.list_jobs(after, 100, processed=False):
        for job in page:
            ...
        after = page[-1].id
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from trackmaster.core.exceptions import DatabaseError
from trackmaster.core.models import Job, now_iso


DATABASE_VERSION = 1


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    source TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT '',
    style TEXT NOT NULL DEFAULT '',

    -- Processing state
    processed INTEGER NOT NULL DEFAULT 0,
    master TEXT NOT NULL DEFAULT '',
    wave TEXT NOT NULL DEFAULT '',

    -- Analysis results
    duration REAL NOT NULL DEFAULT 0,
    tempo REAL NOT NULL DEFAULT 0,
    flags TEXT NOT NULL DEFAULT '',
    flagged INTEGER NOT NULL DEFAULT 0,
    ends INTEGER NOT NULL DEFAULT 0,

    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_processed ON jobs(processed);
CREATE INDEX IF NOT EXISTS idx_jobs_flagged ON jobs(flagged);
"""

_COLUMNS = (
    "id", "source", "type", "style", "processed", "master", "wave",
    "duration", "tempo", "flags", "flagged", "ends", "created_at", "updated_at",
)


class Database:
    """
    Thread-safe SQLite job store.

    Uses a single persistent connection with thread locking for safety.
    All public methods acquire self._lock before executing.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

        if not db_path.parent.exists():
            raise DatabaseError(
                f"Parent directory does not exist: {db_path.parent}",
                details={"path": str(db_path.parent)}
            )

        try:
            self._init_database()
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to initialize database: {e}",
                details={"path": str(db_path)}
            ) from e

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get the persistent database connection as a context manager.

        The connection is created once and reused for all operations.
        sqlite3 errors raised inside the block are wrapped in DatabaseError.
        """
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                check_same_thread=False  # We handle thread safety with _lock
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL")
        try:
            yield self._conn
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Database operation failed: {e}",
                details={"path": str(self.db_path), "original_error": str(e)}
            ) from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA_SQL)

            cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
            row = cursor.fetchone()

            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (DATABASE_VERSION,))
            elif row[0] != DATABASE_VERSION:
                raise DatabaseError(
                    f"Database version mismatch: expected {DATABASE_VERSION}, got {row[0]}",
                    details={"expected": DATABASE_VERSION, "actual": row[0]}
                )
            conn.commit()

    def _serialize_job(self, job: Job) -> tuple[Any, ...]:
        """Convert a Job to a row tuple in _COLUMNS order."""
        return (
            job.id, job.source, job.type, job.style,
            1 if job.processed else 0, job.master, job.wave,
            float(job.duration), float(job.tempo), job.flags,
            1 if job.flagged else 0, 1 if job.ends else 0,
            job.created_at, job.updated_at,
        )

    def _deserialize_job(self, row: sqlite3.Row) -> Job:
        """Convert a SQLite row to a Job with proper types."""
        return Job(
            id=row["id"],
            source=row["source"],
            type=row["type"],
            style=row["style"],
            processed=bool(row["processed"]),
            master=row["master"],
            wave=row["wave"],
            duration=row["duration"],
            tempo=row["tempo"],
            flags=row["flags"],
            ends=bool(row["ends"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # =========================================================================
    # Job Operations
    # =========================================================================

    def add_job(self, job: Job) -> None:
        """
        Insert a new job.

        Raises:
            DatabaseError: If a job with the same id already exists.
        """
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    self._serialize_job(job)
                )
                conn.commit()

    def get_job(self, job_id: str) -> Job | None:
        """Fetch the latest stored version of a job, or None."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
                row = cursor.fetchone()
                return self._deserialize_job(row) if row else None

    def list_jobs(
        self,
        after_id: str,
        page_size: int,
        processed: bool | None = None,
        job_type: str | None = None
    ) -> list[Job]:
        """
        Return the next page of jobs in ascending id order.

        Args:
            after_id: Exclusive lower bound ("" starts from the beginning).
            page_size: Maximum number of jobs returned.
            processed: Only jobs in this processing state, if given.
            job_type: SQL LIKE pattern matched against the job type, if given.

        Returns:
            Jobs with id > after_id. An empty list means the source is exhausted.
        """
        clauses = ["id > ?"]
        params: list[Any] = [after_id]
        if processed is not None:
            clauses.append("processed = ?")
            params.append(1 if processed else 0)
        if job_type:
            clauses.append("type LIKE ?")
            params.append(job_type)
        params.append(page_size)

        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"SELECT * FROM jobs WHERE {' AND '.join(clauses)} ORDER BY id LIMIT ?",
                    params
                )
                return [self._deserialize_job(row) for row in cursor.fetchall()]

    def save_job(self, job: Job) -> Job:
        """
        Overwrite a stored job by id (last write wins).

        Returns:
            The job as saved, with updated_at refreshed.

        Raises:
            DatabaseError: If no job with that id exists.
        """
        saved = job.copy(updated_at=now_iso())
        row = self._serialize_job(saved)
        assignments = ", ".join(f"{column} = ?" for column in _COLUMNS[1:])
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"UPDATE jobs SET {assignments} WHERE id = ?",
                    row[1:] + (saved.id,)
                )
                conn.commit()
                if cursor.rowcount == 0:
                    raise DatabaseError(
                        f"Job not found: {job.id}",
                        details={"job_id": job.id}
                    )
        return saved

    def get_stats(self) -> dict[str, int]:
        """Return job counts: total, processed, pending and flagged."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    SELECT
                        COUNT(*) AS total,
                        COALESCE(SUM(processed), 0) AS processed,
                        COALESCE(SUM(flagged), 0) AS flagged
                    FROM jobs
                """)
                row = cursor.fetchone()
                return {
                    "total": row["total"],
                    "processed": row["processed"],
                    "pending": row["total"] - row["processed"],
                    "flagged": row["flagged"],
                }
