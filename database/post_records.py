"""
Post records — the caller-owned rows behind post-submission jobs.

The dashboard creates a post record when a user schedules a post and puts
its id into the job payload. The post worker writes the outcome of every
attempt back here; the queue_jobs row only tracks retry bookkeeping.
"""
from __future__ import annotations

import itertools
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import update

from database.models import PostJobRow, as_utc
from database.session import get_session
from models.schemas import PostRecord, PostRecordStatus

logger = structlog.get_logger()


class BasePostRecordStore(ABC):

    @abstractmethod
    async def create(self, record: PostRecord) -> PostRecord:
        ...

    @abstractmethod
    async def get(self, record_id: int) -> Optional[PostRecord]:
        ...

    @abstractmethod
    async def update_status(self, record_id: int, status: PostRecordStatus, result: dict[str, Any]) -> None:
        ...


class SqlPostRecordStore(BasePostRecordStore):

    def __init__(self, session_factory=None):
        self._session = session_factory or get_session

    async def create(self, record: PostRecord) -> PostRecord:
        async with self._session() as db:
            row = PostJobRow(
                owner_id=record.owner_id,
                destination=record.destination,
                title_final=record.title_final,
                body_final=record.body_final,
                media_key=record.media_key,
                scheduled_at=record.scheduled_at,
                status=record.status.value,
                result=record.result,
            )
            db.add(row)
            await db.flush()
            return self._row_to_record(row)

    async def get(self, record_id: int) -> Optional[PostRecord]:
        async with self._session() as db:
            row = await db.get(PostJobRow, record_id)
            return self._row_to_record(row) if row else None

    async def update_status(self, record_id: int, status: PostRecordStatus, result: dict[str, Any]) -> None:
        async with self._session() as db:
            await db.execute(
                update(PostJobRow)
                .where(PostJobRow.id == record_id)
                .values(status=status.value, result=result, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )

    @staticmethod
    def _row_to_record(row: PostJobRow) -> PostRecord:
        return PostRecord(
            id=row.id, owner_id=row.owner_id, destination=row.destination,
            title_final=row.title_final, body_final=row.body_final,
            media_key=row.media_key, scheduled_at=as_utc(row.scheduled_at),
            status=PostRecordStatus(row.status), result=row.result or {},
        )


class InMemoryPostRecordStore(BasePostRecordStore):

    def __init__(self):
        self._records: dict[int, PostRecord] = {}
        self._ids = itertools.count(1)

    async def create(self, record: PostRecord) -> PostRecord:
        stored = record.model_copy(update={"id": next(self._ids)})
        self._records[stored.id] = stored
        return stored.model_copy()

    async def get(self, record_id: int) -> Optional[PostRecord]:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def update_status(self, record_id: int, status: PostRecordStatus, result: dict[str, Any]) -> None:
        record = self._records.get(record_id)
        if record is None:
            logger.warning("post_record_not_found", post_job_id=record_id)
            return
        record.status = status
        record.result = dict(result)
