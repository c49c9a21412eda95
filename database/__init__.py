"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  job = await store.get(1)
"""
from database.models import Base, QueueJobRow, EventLogRow, PostJobRow
from database.session import get_engine, get_session, init_db, ping_db, close_db
from database.store_base import BaseJobStore
from database.store import SqlJobStore
from database.store_memory import InMemoryJobStore
from database.store_factory import create_store, reset_store
from database.event_log import BaseEventLog, SqlEventLog, InMemoryEventLog
from database.post_records import BasePostRecordStore, SqlPostRecordStore, InMemoryPostRecordStore

__all__ = [
    # ORM models
    "Base", "QueueJobRow", "EventLogRow", "PostJobRow",
    # Session management
    "get_engine", "get_session", "init_db", "ping_db", "close_db",
    # Job stores
    "BaseJobStore", "SqlJobStore", "InMemoryJobStore",
    "create_store", "reset_store",
    # Event log and post records
    "BaseEventLog", "SqlEventLog", "InMemoryEventLog",
    "BasePostRecordStore", "SqlPostRecordStore", "InMemoryPostRecordStore",
]
