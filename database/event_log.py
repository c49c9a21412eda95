"""
Event Log — append-only audit trail and engagement history.

Post workers append job.completed / job.failed audit events; the
scheduling optimizer appends and later aggregates post.engagement events.
Rows are never updated.

JSON meta filtering is done Python-side for cross-database compatibility
(JSON column search is not portable).
"""
from __future__ import annotations

import copy
import itertools
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, and_

from database.models import EventLogRow, as_utc
from database.session import get_session
from models.schemas import EventLogEntry

logger = structlog.get_logger()


def _matches(meta: dict[str, Any], meta_match: Optional[dict[str, Any]]) -> bool:
    if not meta_match:
        return True
    return all(meta.get(k) == v for k, v in meta_match.items())


class BaseEventLog(ABC):
    """Interface for audit/event log backends."""

    @abstractmethod
    async def append(self, owner_id: Optional[int], event_type: str, meta: dict[str, Any]) -> EventLogEntry:
        ...

    @abstractmethod
    async def recent(
        self, event_type: str, since: datetime, limit: int = 100,
        meta_match: Optional[dict[str, Any]] = None,
    ) -> list[EventLogEntry]:
        """Newest-first events of `event_type` created at or after `since`."""
        ...


class SqlEventLog(BaseEventLog):

    # Rows scanned per page while filtering meta in Python
    _PAGE = 500

    def __init__(self, session_factory=None):
        self._session = session_factory or get_session

    async def append(self, owner_id: Optional[int], event_type: str, meta: dict[str, Any]) -> EventLogEntry:
        async with self._session() as db:
            row = EventLogRow(
                owner_id=owner_id, event_type=event_type, meta=meta,
                created_at=datetime.now(timezone.utc),
            )
            db.add(row)
            await db.flush()
            return self._row_to_entry(row)

    async def recent(
        self, event_type: str, since: datetime, limit: int = 100,
        meta_match: Optional[dict[str, Any]] = None,
    ) -> list[EventLogEntry]:
        found: list[EventLogEntry] = []
        since = as_utc(since)
        offset = 0
        async with self._session() as db:
            while len(found) < limit:
                result = await db.execute(
                    select(EventLogRow)
                    .where(and_(
                        EventLogRow.event_type == event_type,
                        EventLogRow.created_at >= since,
                    ))
                    .order_by(EventLogRow.created_at.desc(), EventLogRow.id.desc())
                    .offset(offset)
                    .limit(self._PAGE)
                )
                rows = result.scalars().all()
                if not rows:
                    break
                for row in rows:
                    if _matches(row.meta or {}, meta_match):
                        found.append(self._row_to_entry(row))
                        if len(found) >= limit:
                            break
                offset += len(rows)
        return found

    @staticmethod
    def _row_to_entry(row: EventLogRow) -> EventLogEntry:
        return EventLogEntry(
            id=row.id, owner_id=row.owner_id, event_type=row.event_type,
            meta=row.meta or {}, created_at=as_utc(row.created_at),
        )


class InMemoryEventLog(BaseEventLog):

    def __init__(self):
        self._entries: list[EventLogEntry] = []
        self._ids = itertools.count(1)

    async def append(self, owner_id: Optional[int], event_type: str, meta: dict[str, Any]) -> EventLogEntry:
        entry = EventLogEntry(
            id=next(self._ids), owner_id=owner_id,
            event_type=event_type, meta=copy.deepcopy(meta),
        )
        self._entries.append(entry)
        return entry

    async def add(self, entry: EventLogEntry) -> None:
        """Insert a pre-built entry, keeping its created_at (fixtures, backfills)."""
        entry.id = next(self._ids)
        self._entries.append(entry)

    async def recent(
        self, event_type: str, since: datetime, limit: int = 100,
        meta_match: Optional[dict[str, Any]] = None,
    ) -> list[EventLogEntry]:
        matching = [
            e for e in self._entries
            if e.event_type == event_type and e.created_at >= since and _matches(e.meta, meta_match)
        ]
        matching.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return matching[:limit]

    @property
    def entries(self) -> list[EventLogEntry]:
        return list(self._entries)
