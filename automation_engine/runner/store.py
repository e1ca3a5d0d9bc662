"""
Job persistence collaborators.

The queue keeps its ordering index in memory and writes every state change
through to a JobStore. InMemoryJobStore is enough for a single process;
SqliteJobStore keeps jobs across restarts.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List

from automation_engine.errors import QueueUnavailableError, ValidationError
from automation_engine.models import Job


class JobStore(ABC):
    """Storage contract the Job Queue writes through to."""

    @abstractmethod
    def save(self, job: Job) -> None:
        """Insert or replace the job record."""

    @abstractmethod
    def delete(self, job_id: str) -> None:
        """Remove the job record if present."""

    @abstractmethod
    def load_all(self) -> List[Job]:
        """Return every stored job."""


class InMemoryJobStore(JobStore):
    def __init__(self):
        self._jobs: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def save(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job.to_dict()

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def load_all(self) -> List[Job]:
        with self._lock:
            return [Job.from_dict(data) for data in self._jobs.values()]


class SqliteJobStore(JobStore):
    """
    Durable store backed by a single sqlite table.

    Args:
        db_path: Path to the database file (created if missing)
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.init_database()

    @contextmanager
    def get_db_connection(self):
        """
        Context manager for database connections.

        Yields:
            sqlite3 connection with row factory set to dict
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def init_database(self) -> None:
        """Create the jobs table and indexes."""
        with self.get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS automation_jobs (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    payload_json TEXT,
                    dedup_key TEXT,
                    owner_user_id TEXT,
                    state TEXT NOT NULL DEFAULT 'queued',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER,
                    timeout_seconds REAL,
                    submitted_at TIMESTAMP NOT NULL,
                    available_at TIMESTAMP,
                    started_at TIMESTAMP,
                    completed_at TIMESTAMP,
                    last_error TEXT,
                    result_json TEXT
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_automation_jobs_state ON automation_jobs(state)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_automation_jobs_type ON automation_jobs(type)")
            conn.commit()

    def save(self, job: Job) -> None:
        data = job.to_dict()
        try:
            payload_json = json.dumps(data['payload'])
            # Handler results may carry datetimes or other non-JSON values
            result_json = json.dumps(data['result'], default=str) if data['result'] is not None else None
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Job payload is not JSON serializable: {e}")

        try:
            with self.get_db_connection() as conn:
                conn.execute("""
                    INSERT OR REPLACE INTO automation_jobs (
                        id, type, priority, payload_json, dedup_key, owner_user_id,
                        state, retry_count, max_retries, timeout_seconds,
                        submitted_at, available_at, started_at, completed_at,
                        last_error, result_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    data['id'], data['type'], data['priority'],
                    payload_json, data['dedup_key'], data['owner_user_id'],
                    data['state'], data['retry_count'], data['max_retries'],
                    data['timeout_seconds'], data['submitted_at'], data['available_at'],
                    data['started_at'], data['completed_at'], data['last_error'],
                    result_json,
                ))
                conn.commit()
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"DB error while saving job: {e}")

    def delete(self, job_id: str) -> None:
        try:
            with self.get_db_connection() as conn:
                conn.execute("DELETE FROM automation_jobs WHERE id = ?", (job_id,))
                conn.commit()
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"DB error while deleting job: {e}")

    def load_all(self) -> List[Job]:
        with self.get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM automation_jobs ORDER BY submitted_at"
            ).fetchall()

        jobs = []
        for row in rows:
            data = dict(row)
            data['payload'] = json.loads(data.pop('payload_json') or 'null')
            result_json = data.pop('result_json')
            data['result'] = json.loads(result_json) if result_json else None
            jobs.append(Job.from_dict(data))
        return jobs
