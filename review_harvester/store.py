"""
Job Store - durable registry of jobs keyed by job id.

Every ``put``/``delete`` is committed before it returns. ``SqliteJobStore``
reads the whole table back when opened so jobs that were mid-flight before a
restart stay visible (they are not resumed).
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from pydantic import ValidationError

from .models import ACTIVE_STATUSES, Job

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    async def get(self, job_id: str) -> Optional[Job]: ...

    async def put(self, job: Job) -> None: ...

    async def delete(self, job_id: str) -> None: ...

    async def list(self) -> List[Job]: ...


def most_recent_active(jobs: Iterable[Job]) -> Optional[Job]:
    """The running or sending job started last, if any."""
    active = [j for j in jobs if j.status in ACTIVE_STATUSES]
    if not active:
        return None
    return max(active, key=lambda j: j.started_at)


class MemoryJobStore:
    """Process-local store; copies on the way in and out like a real backend."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def put(self, job: Job) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    async def list(self) -> List[Job]:
        return [j.model_copy(deep=True) for j in self._jobs.values()]


class SqliteJobStore:
    """
    Single ``jobs`` table, one JSON document per job.

    An in-memory copy serves reads; writes go to SQLite first, on a worker
    thread so a commit never stalls the event loop.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._init_schema()
        self._load()

    def _init_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )

    def _load(self) -> None:
        rows = self._conn.execute("SELECT id, data FROM jobs").fetchall()
        for row in rows:
            try:
                job = Job.model_validate_json(row["data"])
            except ValidationError as e:
                logger.warning("Skipping unreadable job row id=%s: %s", row["id"], e)
                continue
            self._jobs[job.id] = job

        if self._jobs:
            in_flight = [j.id for j in self._jobs.values() if j.status in ACTIVE_STATUSES]
            logger.info(
                "Rehydrated %d jobs from %s (%d were in flight)",
                len(self._jobs), self.path, len(in_flight),
            )

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def _write(self, sql: str, params: tuple) -> None:
        with self._write_lock, self._conn:
            self._conn.execute(sql, params)

    async def put(self, job: Job) -> None:
        await asyncio.to_thread(
            self._write,
            "INSERT OR REPLACE INTO jobs (id, data, updated_at) VALUES (?, ?, ?)",
            (job.id, job.model_dump_json(), job.updated_at),
        )
        self._jobs[job.id] = job.model_copy(deep=True)

    async def delete(self, job_id: str) -> None:
        await asyncio.to_thread(self._write, "DELETE FROM jobs WHERE id = ?", (job_id,))
        self._jobs.pop(job_id, None)

    async def list(self) -> List[Job]:
        return [j.model_copy(deep=True) for j in self._jobs.values()]

    def close(self) -> None:
        with self._write_lock:
            self._conn.close()
