"""
Queue Factory — build a QueueBackend from settings.

The queue is optional infrastructure: when the store cannot be reached
after a short retry, the factory logs a warning and returns None so the
rest of the application keeps running with queueing disabled.
"""
from __future__ import annotations

import structlog
from typing import Optional

from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import Settings, get_settings
from database.session import init_db, ping_db
from database.store_base import BaseJobStore
from database.store_factory import create_store
from job_queue.backend import Clock, QueueBackend

logger = structlog.get_logger()


async def _check_database(settings: Settings) -> None:
    await init_db(settings.database.url)
    await ping_db()


async def check_store(settings: Settings) -> None:
    """Create tables and round-trip the database, retrying with backoff."""
    checked = retry(
        stop=stop_after_attempt(max(1, settings.queue.startup_check_attempts)),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )(_check_database)
    await checked(settings)


async def create_queue_backend(
    settings: Optional[Settings] = None,
    store: Optional[BaseJobStore] = None,
    clock: Optional[Clock] = None,
) -> Optional[QueueBackend]:
    settings = settings or get_settings()

    if not settings.queue.enabled:
        logger.warning("queue_disabled", reason="disabled_in_config")
        return None

    if store is None:
        backend_name = settings.database.store_backend
        if backend_name == "sql":
            try:
                await check_store(settings)
            except Exception as e:
                logger.warning("queue_disabled", reason="store_unreachable", error=str(e))
                return None
        store = create_store({"store_backend": backend_name})

    backend = QueueBackend(
        store,
        clock=clock,
        poll_interval_seconds=settings.queue.poll_interval_seconds,
        backoff_base_seconds=settings.queue.backoff_base_seconds,
        job_timeout_seconds=settings.queue.job_timeout_seconds,
        reaper_grace_seconds=settings.queue.reaper_grace_seconds,
        default_max_attempts=settings.queue.default_max_attempts,
    )
    logger.info("queue_backend_created",
                store=type(store).__name__,
                poll_interval_s=settings.queue.poll_interval_seconds)
    return backend
