from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from uuid import uuid4


@dataclass(frozen=True)
class PipelineJob:
    job_id: str
    document_id: str
    task: str
    status: str
    attempts: int
    owner_id: str | None = None
    last_error: str | None = None


class TaskQueue:
    """Durable job table; a running job whose lease expired is claimable again."""

    def __init__(
        self,
        db_path: str | Path = "data/reconciler.db",
        *,
        lease_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = str(db_path)
        self._lease_seconds = lease_seconds
        self._clock = clock
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pipeline_jobs (
                    job_id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    task TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    owner_id TEXT,
                    last_error TEXT,
                    lease_expires_at REAL,
                    enqueued_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )

    @staticmethod
    def _row_to_job(row: tuple) -> PipelineJob:
        return PipelineJob(
            job_id=row[0],
            document_id=row[1],
            task=row[2],
            status=row[3],
            attempts=row[4],
            owner_id=row[5],
            last_error=row[6],
        )

    def enqueue(self, document_id: str, task: str = "process") -> str:
        now = self._clock()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT job_id FROM pipeline_jobs
                WHERE document_id = ? AND task = ? AND status IN ('queued', 'running')
                ORDER BY enqueued_at LIMIT 1
                """,
                (document_id, task),
            ).fetchone()
            if row is not None:
                conn.execute("COMMIT")
                return row[0]
            job_id = uuid4().hex
            conn.execute(
                """
                INSERT INTO pipeline_jobs
                (job_id, document_id, task, status, attempts, enqueued_at, updated_at)
                VALUES (?, ?, ?, 'queued', 0, ?, ?)
                """,
                (job_id, document_id, task, now, now),
            )
            conn.execute("COMMIT")
        return job_id

    def claim_next(self, worker_id: str) -> PipelineJob | None:
        now = self._clock()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT job_id FROM pipeline_jobs
                WHERE status = 'queued'
                   OR (status = 'running' AND lease_expires_at < ?)
                ORDER BY enqueued_at LIMIT 1
                """,
                (now,),
            ).fetchone()
            if row is None:
                conn.execute("COMMIT")
                return None
            conn.execute(
                """
                UPDATE pipeline_jobs
                SET status = 'running', owner_id = ?, attempts = attempts + 1,
                    lease_expires_at = ?, updated_at = ?
                WHERE job_id = ?
                """,
                (worker_id, now + self._lease_seconds, now, row[0]),
            )
            claimed = conn.execute(
                """
                SELECT job_id, document_id, task, status, attempts, owner_id, last_error
                FROM pipeline_jobs WHERE job_id = ?
                """,
                (row[0],),
            ).fetchone()
            conn.execute("COMMIT")
        return self._row_to_job(claimed)

    def _finish(self, job_id: str, status: str, error: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE pipeline_jobs
                SET status = ?, last_error = ?, lease_expires_at = NULL, updated_at = ?
                WHERE job_id = ?
                """,
                (status, error, self._clock(), job_id),
            )

    def mark_done(self, job_id: str) -> None:
        self._finish(job_id, "done", None)

    def mark_failed(self, job_id: str, error: str) -> None:
        self._finish(job_id, "failed", error)

    def get(self, job_id: str) -> PipelineJob | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT job_id, document_id, task, status, attempts, owner_id, last_error
                FROM pipeline_jobs WHERE job_id = ?
                """,
                (job_id,),
            ).fetchone()
        return self._row_to_job(row) if row else None

    def pending_count(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM pipeline_jobs WHERE status IN ('queued', 'running')"
            ).fetchone()
        return int(row[0])
