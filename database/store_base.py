"""
Abstract Job Store — Interface for all queue storage backends.

Implementations:
  - SqlJobStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryJobStore (dict-based, single-process, no persistence)

Every transition is guarded by the status the caller expects the row to be
in, and by the attempt count read at claim time. A row that another worker (or
the stale-job reaper) already moved on is left untouched and the call
reports False. Terminal rows (completed / failed) are never written
again except through requeue_failed.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import Job, JobStatus


class BaseJobStore(ABC):
    """Interface that all job store backends must implement."""

    # ── Writes ────────────────────────────────────────────────

    @abstractmethod
    async def insert(
        self, queue_name: str, payload: dict[str, Any], *,
        max_attempts: int, delay_until: Optional[datetime], now: datetime,
    ) -> Job:
        ...

    @abstractmethod
    async def promote_due(self, now: datetime) -> int:
        """Flip delayed jobs with delay_until <= now to pending. Returns count."""
        ...

    @abstractmethod
    async def claim(self, queue_name: str, limit: int, now: datetime) -> list[Job]:
        """Atomically move up to `limit` pending jobs to active, oldest first."""
        ...

    @abstractmethod
    async def mark_completed(self, job_id: int, claimed_attempts: int, now: datetime) -> bool:
        ...

    @abstractmethod
    async def mark_retry(
        self, job_id: int, claimed_attempts: int, delay_until: datetime,
        error: str, now: datetime,
    ) -> bool:
        """Record a failed attempt and park the job as delayed until `delay_until`."""
        ...

    @abstractmethod
    async def mark_failed(self, job_id: int, claimed_attempts: int, error: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def requeue_failed(self, queue_name: str, now: datetime) -> int:
        ...

    # ── Reads ─────────────────────────────────────────────────

    @abstractmethod
    async def get(self, job_id: int) -> Optional[Job]:
        ...

    @abstractmethod
    async def find_stale_active(self, older_than: datetime, limit: int = 100) -> list[Job]:
        ...

    @abstractmethod
    async def count_by_status(self, queue_name: str) -> dict[JobStatus, int]:
        ...

    @abstractmethod
    async def failure_counts(self, queue_name: str, since: datetime) -> tuple[int, int]:
        """Return (total, failed) for jobs created at or after `since`."""
        ...

    async def close(self) -> None:
        """Release backend resources. No-op by default."""
