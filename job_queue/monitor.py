"""
Queue Monitor — periodic per-queue metrics and a coarse health rating.

Health rules per queue:
  critical  failure rate over the window > 50%
  warning   failure rate > 20%, more than 100 pending, or pending jobs
            with nothing active (stalled)
  healthy   otherwise

A queue whose metrics cannot be collected is reported critical with a
failure rate of 1.0.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from job_queue.backend import QueueBackend
from models.schemas import HealthStatus, JobStatus, QueueMetrics, SystemHealth

logger = structlog.get_logger()

CRITICAL_FAILURE_RATE = 0.5
WARNING_FAILURE_RATE = 0.2
WARNING_PENDING = 100
SYSTEM_WARNING_FAILURE_RATE = 0.1


def determine_health(failure_rate: float, pending: int, active: int) -> HealthStatus:
    if failure_rate > CRITICAL_FAILURE_RATE:
        return HealthStatus.CRITICAL
    if failure_rate > WARNING_FAILURE_RATE or pending > WARNING_PENDING:
        return HealthStatus.WARNING
    if active == 0 and pending > 0:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


class QueueMonitor:

    def __init__(
        self,
        backend: QueueBackend,
        queue_names: Optional[list[str]] = None,
        interval_seconds: float = 30,
        failure_window_minutes: int = 60,
    ):
        self.backend = backend
        self._queue_names = queue_names
        self.interval = interval_seconds
        self.failure_window_minutes = failure_window_minutes
        self._metrics: dict[str, QueueMetrics] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def queue_names(self) -> list[str]:
        return self._queue_names or self.backend.registry.queue_names

    async def collect(self) -> dict[str, QueueMetrics]:
        for queue_name in self.queue_names:
            try:
                counts = await self.backend.get_status_counts(queue_name)
                stats = await self.backend.get_failure_rate(queue_name, self.failure_window_minutes)
                pending = counts.get(JobStatus.PENDING, 0)
                active = counts.get(JobStatus.ACTIVE, 0)
                metrics = QueueMetrics(
                    queue_name=queue_name,
                    pending=pending,
                    active=active,
                    completed=counts.get(JobStatus.COMPLETED, 0),
                    failed=counts.get(JobStatus.FAILED, 0),
                    delayed=counts.get(JobStatus.DELAYED, 0),
                    in_flight=self.backend.in_flight(queue_name),
                    paused=self.backend.registry.is_paused(queue_name),
                    failure_rate=stats.failure_rate,
                    health_status=determine_health(stats.failure_rate, pending, active),
                )
            except Exception as e:
                logger.error("queue_metrics_failed", queue=queue_name, error=str(e))
                metrics = QueueMetrics(
                    queue_name=queue_name,
                    failure_rate=1.0,
                    health_status=HealthStatus.CRITICAL,
                )

            if metrics.health_status != HealthStatus.HEALTHY:
                logger.warning("queue_unhealthy", queue=queue_name,
                               health=metrics.health_status.value,
                               pending=metrics.pending,
                               failure_rate=metrics.failure_rate)
            self._metrics[queue_name] = metrics
        return self.get_queue_metrics()

    def get_queue_metrics(self) -> dict[str, QueueMetrics]:
        return {name: m.model_copy() for name, m in self._metrics.items()}

    def get_system_health(self) -> SystemHealth:
        metrics = list(self._metrics.values())
        if not metrics:
            return SystemHealth()

        avg_failure_rate = sum(m.failure_rate for m in metrics) / len(metrics)
        statuses = {m.health_status for m in metrics}
        if HealthStatus.CRITICAL in statuses:
            overall = HealthStatus.CRITICAL
        elif HealthStatus.WARNING in statuses or avg_failure_rate > SYSTEM_WARNING_FAILURE_RATE:
            overall = HealthStatus.WARNING
        else:
            overall = HealthStatus.HEALTHY

        return SystemHealth(
            overall=overall,
            queues=len(metrics),
            total_pending=sum(m.pending for m in metrics),
            total_failed=sum(m.failed for m in metrics),
            avg_failure_rate=round(avg_failure_rate, 2),
        )

    # ── Loop control ──────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop(), name="queue_monitor")
        logger.info("queue_monitor_started", interval_s=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("queue_monitor_stopped")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.collect()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_monitor_error", error=str(e))

            await asyncio.sleep(self.interval)
