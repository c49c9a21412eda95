"""Tests for the QueueMonitor health rules and metrics collection."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from job_queue.monitor import QueueMonitor, determine_health
from models.schemas import HealthStatus


QUEUE = "monitored"


class TestDetermineHealth:

    @pytest.mark.parametrize("failure_rate,pending,active,expected", [
        (0.0, 0, 0, HealthStatus.HEALTHY),
        (0.1, 5, 2, HealthStatus.HEALTHY),
        (0.2, 0, 0, HealthStatus.HEALTHY),
        (0.21, 0, 0, HealthStatus.WARNING),
        (0.0, 101, 4, HealthStatus.WARNING),
        (0.0, 3, 0, HealthStatus.WARNING),
        (0.5, 0, 0, HealthStatus.WARNING),
        (0.51, 0, 1, HealthStatus.CRITICAL),
    ])
    def test_rules(self, failure_rate, pending, active, expected):
        assert determine_health(failure_rate, pending, active) == expected


class TestQueueMonitor:

    @pytest.mark.asyncio
    async def test_collect_counts_and_health(self, backend):
        async def handler(payload, job_id):
            raise RuntimeError("nope")

        backend.register_processor(QUEUE, handler, concurrency=2)
        for _ in range(2):
            await backend.enqueue(QUEUE, {}, max_attempts=1)
        await backend.poll_once()
        await backend.drain()
        await backend.enqueue(QUEUE, {})

        monitor = QueueMonitor(backend, [QUEUE])
        metrics = (await monitor.collect())[QUEUE]

        assert metrics.failed == 2
        assert metrics.pending == 1
        assert metrics.active == 0
        assert metrics.failure_rate == pytest.approx(2 / 3)
        assert metrics.health_status == HealthStatus.CRITICAL
        assert metrics.paused is False

    @pytest.mark.asyncio
    async def test_queue_names_default_to_registered(self, backend):
        async def handler(payload, job_id):
            return None

        backend.register_processor("a", handler)
        backend.register_processor("b", handler)
        monitor = QueueMonitor(backend)
        assert sorted((await monitor.collect()).keys()) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_collection_error_marks_queue_critical(self, backend):
        backend.get_status_counts = AsyncMock(side_effect=RuntimeError("db down"))
        monitor = QueueMonitor(backend, [QUEUE])

        metrics = (await monitor.collect())[QUEUE]
        assert metrics.health_status == HealthStatus.CRITICAL
        assert metrics.failure_rate == 1.0
        assert monitor.get_system_health().overall == HealthStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_system_health_aggregates(self, backend):
        await backend.enqueue("busy", {})
        monitor = QueueMonitor(backend, ["idle", "busy"])
        await monitor.collect()

        health = monitor.get_system_health()
        assert health.queues == 2
        assert health.total_pending == 1
        assert health.total_failed == 0
        # pending with nothing active
        assert health.overall == HealthStatus.WARNING

    def test_system_health_without_metrics(self, backend):
        health = QueueMonitor(backend, [QUEUE]).get_system_health()
        assert health.overall == HealthStatus.HEALTHY
        assert health.queues == 0

    @pytest.mark.asyncio
    async def test_metrics_are_copies(self, backend):
        monitor = QueueMonitor(backend, [QUEUE])
        await monitor.collect()
        monitor.get_queue_metrics()[QUEUE].pending = 99
        assert monitor.get_queue_metrics()[QUEUE].pending == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, backend):
        monitor = QueueMonitor(backend, [QUEUE], interval_seconds=0.01)
        await monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert QUEUE in monitor.get_queue_metrics()
        assert monitor._task is None
