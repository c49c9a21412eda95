"""
Queue Backend — durable, polling job queue over a relational job store.

Lifecycle of a job:

  enqueue ──▶ delayed ──(delay_until <= now)──▶ pending ──claim──▶ active
                 ▲                                                  │
                 └──────── retry (2^(n-1) × base) ◀── handler raised┤
                                                                    ├──▶ completed
                                             out of attempts / ─────┴──▶ failed
                                             non-retryable

One poll cycle (poll_once):
  1. promote due delayed jobs
  2. reap active jobs past the execution deadline (crashed or hung workers)
  3. claim up to (concurrency − in flight) jobs per active queue
  4. dispatch each claimed job as its own task, bounded by job_timeout

Usage:
    backend = QueueBackend(store)
    backend.register_processor("post-submission", handler, concurrency=2)
    job_id = await backend.enqueue("post-submission", payload, delay=timedelta(hours=2))
    await backend.start()
    ...
    await backend.stop()
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, ValidationError

from database.store_base import BaseJobStore
from job_queue.errors import (
    JobTimeoutError, PayloadValidationError, QueueError, StorageError,
    is_retryable,
)
from job_queue.registry import JobHandler, ProcessorConfig, ProcessorRegistry
from models.schemas import FailureStats, Job, JobStatus, payload_type_for, utcnow

logger = structlog.get_logger()

Clock = Callable[[], datetime]
Delay = Union[timedelta, int, float, None]

DEADLINE_EXCEEDED = "job exceeded execution deadline"


def _as_timedelta(delay: Delay) -> Optional[timedelta]:
    """Accept a timedelta or a number of milliseconds."""
    if delay is None:
        return None
    if isinstance(delay, timedelta):
        return delay
    return timedelta(milliseconds=delay)


class QueueBackend:
    """
    Polling queue engine. Every state change goes through the store's guarded
    transitions, so several processes can poll the same database.
    """

    def __init__(
        self,
        store: BaseJobStore,
        registry: Optional[ProcessorRegistry] = None,
        *,
        clock: Optional[Clock] = None,
        poll_interval_seconds: float = 2.0,
        backoff_base_seconds: float = 60,
        job_timeout_seconds: float = 300,
        default_max_attempts: int = 3,
        reaper_grace_seconds: Optional[float] = None,
    ):
        self.store = store
        self.registry = registry or ProcessorRegistry()
        self._clock = clock or utcnow
        self.poll_interval = poll_interval_seconds
        self.backoff_base = timedelta(seconds=backoff_base_seconds)
        self.job_timeout = timedelta(seconds=job_timeout_seconds)
        self.default_max_attempts = default_max_attempts
        # Extra age before another process may reap a job; defaults to one poll interval
        self.reaper_grace = timedelta(
            seconds=poll_interval_seconds if reaper_grace_seconds is None else reaper_grace_seconds,
        )

        self._in_flight: dict[str, set[asyncio.Task]] = defaultdict(set)
        self._running_ids: set[int] = set()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    def _now(self) -> datetime:
        return self._clock()

    # ── Producer side ─────────────────────────────────────────

    def _validate(self, queue_name: str, payload: Any) -> dict[str, Any]:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        if not isinstance(payload, dict):
            raise PayloadValidationError(queue_name, "payload must be a JSON object")

        model = payload_type_for(queue_name)
        if model is None:
            return payload
        try:
            return model.model_validate(payload).model_dump(mode="json")
        except ValidationError as e:
            raise PayloadValidationError(queue_name, str(e)) from e

    async def enqueue(
        self,
        queue_name: str,
        payload: Any,
        *,
        delay: Delay = None,
        max_attempts: Optional[int] = None,
    ) -> int:
        """
        Persist a job and return its id.

        Raises PayloadValidationError for a bad payload or max_attempts < 1,
        StorageError when the store write fails.
        """
        data = self._validate(queue_name, payload)
        if max_attempts is None:
            max_attempts = self.default_max_attempts
        if max_attempts < 1:
            raise PayloadValidationError(queue_name, "max_attempts must be >= 1")

        now = self._now()
        delta = _as_timedelta(delay)
        delay_until = now + delta if delta and delta > timedelta(0) else None

        try:
            job = await self.store.insert(
                queue_name, data,
                max_attempts=max_attempts, delay_until=delay_until, now=now,
            )
        except QueueError:
            raise
        except Exception as e:
            logger.error("enqueue_failed", queue=queue_name, error=str(e))
            raise StorageError(f"Failed to enqueue job on {queue_name}: {e}") from e

        logger.info("job_enqueued",
                    job_id=job.id, queue=queue_name,
                    status=job.status.value,
                    delay_until=delay_until.isoformat() if delay_until else None)
        return job.id

    # ── Processor control ─────────────────────────────────────

    def register_processor(self, queue_name: str, handler: JobHandler, *, concurrency: int = 1) -> ProcessorConfig:
        return self.registry.register(queue_name, handler, concurrency=concurrency)

    def pause(self, queue_name: str) -> None:
        self.registry.pause(queue_name)
        logger.info("queue_paused", queue=queue_name)

    def resume(self, queue_name: str) -> None:
        self.registry.resume(queue_name)
        logger.info("queue_resumed", queue=queue_name)

    # ── Queries ───────────────────────────────────────────────

    async def get_job(self, job_id: int) -> Optional[Job]:
        return await self.store.get(job_id)

    async def get_status_counts(self, queue_name: str) -> dict[JobStatus, int]:
        return await self.store.count_by_status(queue_name)

    async def get_pending_count(self, queue_name: str) -> int:
        counts = await self.store.count_by_status(queue_name)
        return counts.get(JobStatus.PENDING, 0)

    async def get_failure_rate(self, queue_name: str, window_minutes: int = 60) -> FailureStats:
        since = self._now() - timedelta(minutes=window_minutes)
        total, failed = await self.store.failure_counts(queue_name, since)
        return FailureStats(
            failure_rate=failed / total if total else 0.0,
            total_jobs=total,
            failed_jobs=failed,
            window_minutes=window_minutes,
        )

    async def retry_failed(self, queue_name: str) -> int:
        """Move every failed job of a queue back to pending with attempts reset."""
        count = await self.store.requeue_failed(queue_name, self._now())
        logger.info("failed_jobs_requeued", queue=queue_name, count=count)
        return count

    def in_flight(self, queue_name: str) -> int:
        return len(self._in_flight.get(queue_name, ()))

    # ── Poll cycle ────────────────────────────────────────────

    async def poll_once(self) -> dict[str, int]:
        """
        Run one promote → reap → claim → dispatch cycle.

        Dispatched handlers keep running after this returns; await drain()
        to wait for them. Returns counts: {"promoted", "reaped", "claimed"}.
        """
        now = self._now()
        stats = {"promoted": 0, "reaped": 0, "claimed": 0}

        stats["promoted"] = await self.store.promote_due(now)
        stats["reaped"] = await self._reap_stale(now)

        for queue_name in self.registry.active_queues():
            config = self.registry.get(queue_name)
            capacity = config.concurrency - self.in_flight(queue_name)
            if capacity <= 0:
                continue
            try:
                jobs = await self.store.claim(queue_name, capacity, now)
            except Exception as e:
                logger.error("poll_claim_failed", queue=queue_name, error=str(e))
                continue
            for job in jobs:
                self._dispatch(job, config.handler)
            stats["claimed"] += len(jobs)

        if any(stats.values()):
            logger.debug("poll_cycle_complete", **stats)
        return stats

    async def _reap_stale(self, now: datetime) -> int:
        stale = await self.store.find_stale_active(now - self.job_timeout - self.reaper_grace)
        reaped = 0
        for job in stale:
            # Our own tasks time out through wait_for
            if job.id in self._running_ids:
                continue
            logger.warning("stale_job_reaped", job_id=job.id, queue=job.queue_name,
                           processed_at=job.processed_at.isoformat() if job.processed_at else None)
            if await self._record_failure(job, JobTimeoutError(DEADLINE_EXCEEDED), now):
                reaped += 1
        return reaped

    def _dispatch(self, job: Job, handler: JobHandler) -> None:
        task = asyncio.create_task(self._run_job(job, handler), name=f"job-{job.id}")
        self._in_flight[job.queue_name].add(task)
        self._running_ids.add(job.id)

        def _forget(t: asyncio.Task, queue_name: str = job.queue_name, job_id: int = job.id):
            self._in_flight[queue_name].discard(t)
            self._running_ids.discard(job_id)

        task.add_done_callback(_forget)
        logger.info("job_claimed", job_id=job.id, queue=job.queue_name,
                    attempt=job.attempts + 1, max_attempts=job.max_attempts)

    async def _run_job(self, job: Job, handler: JobHandler) -> None:
        try:
            try:
                await asyncio.wait_for(
                    handler(job.payload, job.id),
                    timeout=self.job_timeout.total_seconds(),
                )
            except asyncio.TimeoutError:
                await self._record_failure(job, JobTimeoutError(DEADLINE_EXCEEDED))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._record_failure(job, e)
            else:
                if await self.store.mark_completed(job.id, job.attempts, self._now()):
                    logger.info("job_completed", job_id=job.id, queue=job.queue_name,
                                attempt=job.attempts + 1)
                else:
                    logger.warning("job_transition_skipped", job_id=job.id,
                                   queue=job.queue_name, transition="completed")
        except asyncio.CancelledError:
            # Left active; the reaper picks it up once it is past the deadline
            logger.warning("job_cancelled", job_id=job.id, queue=job.queue_name)
            raise
        except Exception as e:
            logger.error("job_bookkeeping_failed", job_id=job.id,
                         queue=job.queue_name, error=str(e))

    async def _record_failure(self, job: Job, exc: BaseException, now: Optional[datetime] = None) -> bool:
        now = now or self._now()
        attempts = job.attempts + 1
        error = str(exc) or exc.__class__.__name__
        retryable = is_retryable(exc)

        if not retryable or attempts >= job.max_attempts:
            ok = await self.store.mark_failed(job.id, job.attempts, error, now)
            if ok:
                logger.warning("job_failed", job_id=job.id, queue=job.queue_name,
                               attempts=attempts, max_attempts=job.max_attempts,
                               retryable=retryable, error=error)
        else:
            delay = self.backoff_delay(attempts)
            ok = await self.store.mark_retry(job.id, job.attempts, now + delay, error, now)
            if ok:
                logger.warning("job_retry_scheduled", job_id=job.id, queue=job.queue_name,
                               attempts=attempts, max_attempts=job.max_attempts,
                               delay_s=delay.total_seconds(), error=error)

        if not ok:
            logger.warning("job_transition_skipped", job_id=job.id,
                           queue=job.queue_name, transition="failure")
        return ok

    def backoff_delay(self, attempts: int) -> timedelta:
        """Delay before the next try after `attempts` failed attempts."""
        return self.backoff_base * (2 ** (attempts - 1))

    # ── Loop control ──────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the poll loop as a background task."""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="queue_poll_loop")
        logger.info("queue_backend_started",
                    interval_s=self.poll_interval,
                    queues=self.registry.queue_names)

    async def _run_loop(self) -> None:
        """Main polling loop — runs until the stop event is set."""
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("poll_cycle_error", error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def drain(self) -> None:
        """Wait for every dispatched handler to finish."""
        tasks = [t for tasks in self._in_flight.values() for t in tasks]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self, drain: bool = True) -> None:
        """
        Stop polling. With drain=True in-flight handlers run to completion;
        otherwise they are cancelled and their jobs stay active until reaped.
        """
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if drain:
            await self.drain()
        else:
            tasks = [t for tasks in self._in_flight.values() for t in tasks]
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("queue_backend_stopped", drained=drain)
