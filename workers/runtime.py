"""
Runtime — wires the queue, stores, optimizer, post worker and monitor.

Shared by the API lifespan and the standalone worker process:

    runtime = await build_runtime(settings)
    await runtime.start()
    ...
    await runtime.stop()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from config.settings import Settings, get_settings
from database.event_log import BaseEventLog, InMemoryEventLog, SqlEventLog
from database.post_records import BasePostRecordStore, InMemoryPostRecordStore, SqlPostRecordStore
from database.session import close_db
from job_queue.backend import Clock, QueueBackend
from job_queue.factory import create_queue_backend
from job_queue.monitor import QueueMonitor
from scheduling.optimizer import SchedulingOptimizer
from workers.collaborators import MediaResolver, SubmissionClientProvider
from workers.gateway import HttpSubmissionGateway
from workers.post_worker import PostWorker

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    backend: Optional[QueueBackend]
    event_log: BaseEventLog
    post_records: BasePostRecordStore
    optimizer: SchedulingOptimizer
    post_worker: Optional[PostWorker] = None
    monitor: Optional[QueueMonitor] = None
    gateway: Optional[HttpSubmissionGateway] = None

    @property
    def queue_enabled(self) -> bool:
        return self.backend is not None

    async def start(self, poll: bool = True) -> None:
        if self.backend is None:
            logger.warning("runtime_started_without_queue")
            return
        if poll:
            await self.backend.start()
        if self.monitor:
            await self.monitor.start()

    async def stop(self) -> None:
        if self.monitor:
            await self.monitor.stop()
        if self.backend:
            await self.backend.stop(drain=self.settings.worker.drain_on_shutdown)
            await self.backend.store.close()
        if self.gateway:
            await self.gateway.close()
        if self.settings.database.store_backend == "sql":
            await close_db()
        logger.info("runtime_stopped")


async def build_runtime(
    settings: Optional[Settings] = None,
    *,
    provider: Optional[SubmissionClientProvider] = None,
    media: Optional[MediaResolver] = None,
    clock: Optional[Clock] = None,
) -> Runtime:
    settings = settings or get_settings()
    backend = await create_queue_backend(settings, clock=clock)

    if settings.database.store_backend == "sql":
        event_log: BaseEventLog = SqlEventLog()
        post_records: BasePostRecordStore = SqlPostRecordStore()
    else:
        event_log = InMemoryEventLog()
        post_records = InMemoryPostRecordStore()

    sched = settings.scheduling
    optimizer = SchedulingOptimizer(
        event_log,
        clock=clock,
        default_timezone=sched.default_timezone,
        history_days=sched.history_days,
        min_samples=sched.min_samples,
        history_limit=sched.history_limit,
        high_engagement_ratio=sched.high_engagement_ratio,
        max_windows=sched.max_windows,
    )
    runtime = Runtime(
        settings=settings, backend=backend, event_log=event_log,
        post_records=post_records, optimizer=optimizer,
    )

    if provider is None and settings.gateway.configured:
        runtime.gateway = HttpSubmissionGateway(settings.gateway)
        provider = runtime.gateway
        media = media or runtime.gateway

    if backend is not None:
        if provider is not None:
            runtime.post_worker = PostWorker(
                provider, event_log, post_records, media,
                queue_name=settings.worker.post_queue_name,
                concurrency=settings.worker.post_concurrency,
                clock=clock,
            )
            runtime.post_worker.register(backend)
        else:
            logger.warning("post_worker_not_configured", reason="no submission gateway")

        if settings.monitor.enabled:
            runtime.monitor = QueueMonitor(
                backend,
                queue_names=[settings.worker.post_queue_name],
                interval_seconds=settings.monitor.interval_seconds,
                failure_window_minutes=settings.monitor.failure_window_minutes,
            )

    logger.info("runtime_built",
                queue_enabled=runtime.queue_enabled,
                post_worker=runtime.post_worker is not None,
                store=settings.database.store_backend)
    return runtime
