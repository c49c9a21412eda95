"""
SqlJobStore — Portable SQL queries for PostgreSQL and SQLite.

Claiming is two steps inside one transaction:
  1. SELECT candidate ids ... FOR UPDATE SKIP LOCKED  (PostgreSQL; SQLite
     ignores the locking clause and serializes writers on the file lock)
  2. UPDATE ... WHERE id = :id AND status = 'pending' per candidate; only
     rows whose update matched are handed out.
Step 2 alone keeps a row from being claimed twice on any backend; step 1
keeps concurrent PostgreSQL claimers from queueing up behind each other.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update, and_, case, func

from database.models import QueueJobRow, as_utc
from database.session import get_session
from database.store_base import BaseJobStore
from models.schemas import Job, JobStatus

logger = structlog.get_logger()


class SqlJobStore(BaseJobStore):
    """
    Persistent job store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    def __init__(self, session_factory=None):
        self._session = session_factory or get_session

    # ── Writes ────────────────────────────────────────────────

    async def insert(
        self, queue_name: str, payload: dict[str, Any], *,
        max_attempts: int, delay_until: Optional[datetime], now: datetime,
    ) -> Job:
        async with self._session() as db:
            row = QueueJobRow(
                queue_name=queue_name,
                payload=payload,
                status=JobStatus.DELAYED.value if delay_until else JobStatus.PENDING.value,
                attempts=0,
                max_attempts=max_attempts,
                delay_until=as_utc(delay_until),
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            await db.flush()
            return self._row_to_job(row)

    async def promote_due(self, now: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                update(QueueJobRow)
                .where(and_(
                    QueueJobRow.status == JobStatus.DELAYED.value,
                    QueueJobRow.delay_until <= now,
                ))
                .values(status=JobStatus.PENDING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    async def claim(self, queue_name: str, limit: int, now: datetime) -> list[Job]:
        if limit <= 0:
            return []
        async with self._session() as db:
            candidates = await db.execute(
                select(QueueJobRow.id)
                .where(and_(
                    QueueJobRow.queue_name == queue_name,
                    QueueJobRow.status == JobStatus.PENDING.value,
                ))
                .order_by(QueueJobRow.created_at, QueueJobRow.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            claimed: list[int] = []
            for job_id in candidates.scalars().all():
                result = await db.execute(
                    update(QueueJobRow)
                    .where(and_(
                        QueueJobRow.id == job_id,
                        QueueJobRow.status == JobStatus.PENDING.value,
                    ))
                    .values(status=JobStatus.ACTIVE.value, processed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(job_id)

            if not claimed:
                return []

            rows = await db.execute(
                select(QueueJobRow)
                .where(QueueJobRow.id.in_(claimed))
                .order_by(QueueJobRow.created_at, QueueJobRow.id)
                .execution_options(populate_existing=True)
            )
            return [self._row_to_job(r) for r in rows.scalars().all()]

    async def _guarded_update(self, job_id: int, claimed_attempts: int, **values) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(QueueJobRow)
                .where(and_(
                    QueueJobRow.id == job_id,
                    QueueJobRow.status == JobStatus.ACTIVE.value,
                    QueueJobRow.attempts == claimed_attempts,
                ))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def mark_completed(self, job_id: int, claimed_attempts: int, now: datetime) -> bool:
        return await self._guarded_update(
            job_id, claimed_attempts,
            status=JobStatus.COMPLETED.value, completed_at=now, updated_at=now,
        )

    async def mark_retry(
        self, job_id: int, claimed_attempts: int, delay_until: datetime,
        error: str, now: datetime,
    ) -> bool:
        return await self._guarded_update(
            job_id, claimed_attempts,
            status=JobStatus.DELAYED.value,
            attempts=claimed_attempts + 1,
            delay_until=as_utc(delay_until),
            error=error,
            updated_at=now,
        )

    async def mark_failed(self, job_id: int, claimed_attempts: int, error: str, now: datetime) -> bool:
        return await self._guarded_update(
            job_id, claimed_attempts,
            status=JobStatus.FAILED.value,
            attempts=claimed_attempts + 1,
            error=error,
            failed_at=now,
            updated_at=now,
        )

    async def requeue_failed(self, queue_name: str, now: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                update(QueueJobRow)
                .where(and_(
                    QueueJobRow.queue_name == queue_name,
                    QueueJobRow.status == JobStatus.FAILED.value,
                ))
                .values(
                    status=JobStatus.PENDING.value, attempts=0,
                    delay_until=None, failed_at=None, updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, job_id: int) -> Optional[Job]:
        async with self._session() as db:
            row = await db.get(QueueJobRow, job_id)
            return self._row_to_job(row) if row else None

    async def find_stale_active(self, older_than: datetime, limit: int = 100) -> list[Job]:
        older_than = as_utc(older_than)
        async with self._session() as db:
            result = await db.execute(
                select(QueueJobRow)
                .where(and_(
                    QueueJobRow.status == JobStatus.ACTIVE.value,
                    QueueJobRow.processed_at < older_than,
                ))
                .order_by(QueueJobRow.processed_at)
                .limit(limit)
            )
            return [self._row_to_job(r) for r in result.scalars().all()]

    async def count_by_status(self, queue_name: str) -> dict[JobStatus, int]:
        async with self._session() as db:
            result = await db.execute(
                select(QueueJobRow.status, func.count())
                .where(QueueJobRow.queue_name == queue_name)
                .group_by(QueueJobRow.status)
            )
            counts = {status: 0 for status in JobStatus}
            for status, n in result.all():
                counts[JobStatus(status)] = int(n)
            return counts

    async def failure_counts(self, queue_name: str, since: datetime) -> tuple[int, int]:
        since = as_utc(since)
        failed_expr = case((QueueJobRow.status == JobStatus.FAILED.value, 1), else_=0)
        async with self._session() as db:
            result = await db.execute(
                select(func.count(), func.coalesce(func.sum(failed_expr), 0))
                .where(and_(
                    QueueJobRow.queue_name == queue_name,
                    QueueJobRow.created_at >= since,
                ))
            )
            total, failed = result.one()
            return int(total or 0), int(failed or 0)

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_job(row: QueueJobRow) -> Job:
        return Job(
            id=row.id,
            queue_name=row.queue_name,
            payload=row.payload or {},
            status=JobStatus(row.status),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            delay_until=as_utc(row.delay_until),
            error=row.error,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            processed_at=as_utc(row.processed_at),
            completed_at=as_utc(row.completed_at),
            failed_at=as_utc(row.failed_at),
        )
