"""
InMemoryJobStore — Dict-backed job store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlJobStore
  - Claims are atomic: no await between the status check and the write,
    so concurrent claimers on one event loop never share a job
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import copy
import itertools
import structlog
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseJobStore
from models.schemas import Job, JobStatus

logger = structlog.get_logger()


class InMemoryJobStore(BaseJobStore):
    """
    Full-featured in-memory store with the same interface as SqlJobStore.
    Returns copies so callers can never mutate stored state by accident.
    """

    def __init__(self):
        self._jobs: dict[int, Job] = {}
        self._ids = itertools.count(1)
        logger.info("inmemory_job_store_initialized")

    # ── Writes ────────────────────────────────────────────────

    async def insert(
        self, queue_name: str, payload: dict[str, Any], *,
        max_attempts: int, delay_until: Optional[datetime], now: datetime,
    ) -> Job:
        job = Job(
            id=next(self._ids),
            queue_name=queue_name,
            payload=copy.deepcopy(payload),
            status=JobStatus.DELAYED if delay_until else JobStatus.PENDING,
            max_attempts=max_attempts,
            delay_until=delay_until,
            created_at=now,
            updated_at=now,
        )
        self._jobs[job.id] = job
        return job.model_copy(deep=True)

    async def promote_due(self, now: datetime) -> int:
        promoted = 0
        for job in self._jobs.values():
            if job.status == JobStatus.DELAYED and job.delay_until and job.delay_until <= now:
                job.status = JobStatus.PENDING
                job.updated_at = now
                promoted += 1
        return promoted

    async def claim(self, queue_name: str, limit: int, now: datetime) -> list[Job]:
        if limit <= 0:
            return []
        pending = sorted(
            (j for j in self._jobs.values()
             if j.queue_name == queue_name and j.status == JobStatus.PENDING),
            key=lambda j: (j.created_at, j.id),
        )
        claimed = []
        for job in pending[:limit]:
            job.status = JobStatus.ACTIVE
            job.processed_at = now
            job.updated_at = now
            claimed.append(job.model_copy(deep=True))
        return claimed

    def _guarded(self, job_id: int, claimed_attempts: int) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.ACTIVE or job.attempts != claimed_attempts:
            return None
        return job

    async def mark_completed(self, job_id: int, claimed_attempts: int, now: datetime) -> bool:
        job = self._guarded(job_id, claimed_attempts)
        if job is None:
            return False
        job.status = JobStatus.COMPLETED
        job.completed_at = now
        job.updated_at = now
        return True

    async def mark_retry(
        self, job_id: int, claimed_attempts: int, delay_until: datetime,
        error: str, now: datetime,
    ) -> bool:
        job = self._guarded(job_id, claimed_attempts)
        if job is None:
            return False
        job.status = JobStatus.DELAYED
        job.attempts = claimed_attempts + 1
        job.delay_until = delay_until
        job.error = error
        job.updated_at = now
        return True

    async def mark_failed(self, job_id: int, claimed_attempts: int, error: str, now: datetime) -> bool:
        job = self._guarded(job_id, claimed_attempts)
        if job is None:
            return False
        job.status = JobStatus.FAILED
        job.attempts = claimed_attempts + 1
        job.error = error
        job.failed_at = now
        job.updated_at = now
        return True

    async def requeue_failed(self, queue_name: str, now: datetime) -> int:
        requeued = 0
        for job in self._jobs.values():
            if job.queue_name == queue_name and job.status == JobStatus.FAILED:
                job.status = JobStatus.PENDING
                job.attempts = 0
                job.delay_until = None
                job.failed_at = None
                job.updated_at = now
                requeued += 1
        return requeued

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, job_id: int) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def find_stale_active(self, older_than: datetime, limit: int = 100) -> list[Job]:
        stale = sorted(
            (j for j in self._jobs.values()
             if j.status == JobStatus.ACTIVE and j.processed_at and j.processed_at < older_than),
            key=lambda j: j.processed_at,
        )
        return [j.model_copy(deep=True) for j in stale[:limit]]

    async def count_by_status(self, queue_name: str) -> dict[JobStatus, int]:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            if job.queue_name == queue_name:
                counts[job.status] += 1
        return counts

    async def failure_counts(self, queue_name: str, since: datetime) -> tuple[int, int]:
        window = [j for j in self._jobs.values()
                  if j.queue_name == queue_name and j.created_at >= since]
        failed = sum(1 for j in window if j.status == JobStatus.FAILED)
        return len(window), failed
