"""
Tests for the PostWorker handler.

Covers:
  - successful submission (post record + audit event)
  - missing account / policy rejection (non-retryable)
  - submission failures (retryable)
  - media degradation to text-only
  - bookkeeping failures never masking the original error
  - registration and end-to-end processing through the QueueBackend
"""
from unittest.mock import AsyncMock

import pytest

from conftest import FakeMediaResolver, FakeProvider, FakeSubmissionClient
from job_queue.errors import NonRetryableJobError, is_retryable
from models.schemas import (
    EligibilityResult, EventType, JobStatus, PostRecord, PostRecordStatus,
    QueueNames, SubmissionResult,
)
from workers.post_worker import (
    NoActiveAccountError, PolicyRejectedError, PostWorker, SubmissionFailedError,
)


def _worker(provider, event_log, post_records, media=None, clock=None):
    return PostWorker(provider, event_log, post_records, media, clock=clock)


class TestPostWorkerSuccess:

    @pytest.mark.asyncio
    async def test_submits_and_records_success(self, provider, event_log, post_records, post_payload, clock):
        created = await post_records.create(PostRecord(
            owner_id=42, destination="workday_humor", title_final="Monday again",
        ))
        worker = _worker(provider, event_log, post_records, clock=clock)

        result = await worker.process({**post_payload, "post_job_id": created.id}, job_id=7)

        assert result == {"success": True, "external_id": "t3_abc123",
                          "url": "https://example.com/p/abc123"}
        [request] = provider.client.requests
        assert request.destination == "workday_humor"
        assert request.title == "Monday again"
        assert request.body == "Coffee first."
        assert request.url is None
        assert request.nsfw is True

        stored = await post_records.get(created.id)
        assert stored.status == PostRecordStatus.SENT
        assert stored.result["external_id"] == "t3_abc123"
        assert stored.result["completed_at"] == clock.now.isoformat()

        [event] = event_log.entries
        assert event.event_type == EventType.JOB_COMPLETED
        assert event.owner_id == 42
        assert event.meta["post_job_id"] == created.id
        assert event.meta["job_id"] == 7

    @pytest.mark.asyncio
    async def test_without_post_record_still_audits(self, provider, event_log, post_records, post_payload):
        worker = _worker(provider, event_log, post_records)
        await worker.process(post_payload, job_id=1)
        assert [e.event_type for e in event_log.entries] == [EventType.JOB_COMPLETED]

    @pytest.mark.asyncio
    async def test_attaches_resolved_media(self, provider, event_log, post_records, post_payload):
        media = FakeMediaResolver({"m1": "https://cdn.example.com/m1.jpg"})
        worker = _worker(provider, event_log, post_records, media)

        await worker.process({**post_payload, "media_key": "m1"}, job_id=1)
        assert provider.client.requests[0].url == "https://cdn.example.com/m1.jpg"


class TestMediaDegradation:

    @pytest.mark.asyncio
    async def test_media_error_posts_text_only(self, provider, event_log, post_records, post_payload):
        media = FakeMediaResolver(error=RuntimeError("bucket unavailable"))
        worker = _worker(provider, event_log, post_records, media)

        result = await worker.process({**post_payload, "media_key": "m1"}, job_id=1)
        assert result["success"] is True
        assert provider.client.requests[0].url is None

    @pytest.mark.asyncio
    async def test_missing_media_posts_text_only(self, provider, event_log, post_records, post_payload):
        worker = _worker(provider, event_log, post_records, FakeMediaResolver())
        await worker.process({**post_payload, "media_key": "gone"}, job_id=1)
        assert provider.client.requests[0].url is None

    @pytest.mark.asyncio
    async def test_no_media_resolver_posts_text_only(self, provider, event_log, post_records, post_payload):
        worker = _worker(provider, event_log, post_records)
        await worker.process({**post_payload, "media_key": "m1"}, job_id=1)
        assert provider.client.requests[0].url is None


class TestPostWorkerFailures:

    @pytest.mark.asyncio
    async def test_no_active_account(self, event_log, post_records, post_payload):
        provider = FakeProvider(has_account=False)
        created = await post_records.create(PostRecord(
            owner_id=42, destination="workday_humor", title_final="t",
        ))
        worker = _worker(provider, event_log, post_records)

        with pytest.raises(NoActiveAccountError):
            await worker.process({**post_payload, "post_job_id": created.id}, job_id=3)

        stored = await post_records.get(created.id)
        assert stored.status == PostRecordStatus.FAILED
        assert "No active account" in stored.result["error"]
        [event] = event_log.entries
        assert event.event_type == EventType.JOB_FAILED
        assert event.meta["error"] == stored.result["error"]

    @pytest.mark.asyncio
    async def test_policy_rejection_is_non_retryable(self, event_log, post_records, post_payload):
        provider = FakeProvider(eligibility=EligibilityResult(ok=False, reason="account too new"))
        worker = _worker(provider, event_log, post_records)

        with pytest.raises(PolicyRejectedError) as exc:
            await worker.process(post_payload, job_id=3)
        assert exc.value.reason == "account too new"
        assert str(exc.value) == "Cannot post: account too new"
        assert not is_retryable(exc.value)
        assert provider.client.requests == []

    @pytest.mark.asyncio
    async def test_unsuccessful_submission_is_retryable(self, event_log, post_records, post_payload):
        client = FakeSubmissionClient(result=SubmissionResult(success=False, error="RATELIMIT"))
        worker = _worker(FakeProvider(client=client), event_log, post_records)

        with pytest.raises(SubmissionFailedError, match="RATELIMIT") as exc:
            await worker.process(post_payload, job_id=3)
        assert is_retryable(exc.value)

    @pytest.mark.asyncio
    async def test_client_exception_propagates(self, event_log, post_records, post_payload):
        client = FakeSubmissionClient(error=ConnectionError("reset by peer"))
        worker = _worker(FakeProvider(client=client), event_log, post_records)

        with pytest.raises(ConnectionError):
            await worker.process(post_payload, job_id=3)
        assert event_log.entries[0].meta["error"] == "reset by peer"

    @pytest.mark.asyncio
    async def test_bookkeeping_failures_do_not_mask_error(self, post_payload):
        provider = FakeProvider(has_account=False)
        event_log = AsyncMock()
        event_log.append.side_effect = RuntimeError("event log down")
        post_records = AsyncMock()
        post_records.update_status.side_effect = RuntimeError("db down")
        worker = _worker(provider, event_log, post_records)

        with pytest.raises(NoActiveAccountError):
            await worker.process({**post_payload, "post_job_id": 5}, job_id=3)
        post_records.update_status.assert_awaited_once()
        event_log.append.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_payload_is_non_retryable(self, provider, event_log, post_records):
        worker = _worker(provider, event_log, post_records)
        with pytest.raises(NonRetryableJobError):
            await worker.process({"owner_id": "not-a-number"}, job_id=3)


class TestPostWorkerInQueue:

    @pytest.mark.asyncio
    async def test_register_uses_configured_concurrency(self, backend, provider, event_log, post_records):
        worker = PostWorker(provider, event_log, post_records, concurrency=2)
        worker.register(backend)

        config = backend.registry.get(QueueNames.POST)
        assert config.concurrency == 2
        assert config.handler == worker.process

    @pytest.mark.asyncio
    async def test_end_to_end_success(self, backend, provider, event_log, post_records, post_payload):
        _worker(provider, event_log, post_records).register(backend)
        job_id = await backend.enqueue(QueueNames.POST, post_payload)

        await backend.poll_once()
        await backend.drain()

        assert (await backend.get_job(job_id)).status == JobStatus.COMPLETED
        assert len(provider.client.requests) == 1

    @pytest.mark.asyncio
    async def test_policy_rejection_fails_job_on_first_attempt(self, backend, event_log, post_records, post_payload):
        provider = FakeProvider(eligibility=EligibilityResult(ok=False, reason="banned"))
        _worker(provider, event_log, post_records).register(backend)
        job_id = await backend.enqueue(QueueNames.POST, post_payload, max_attempts=3)

        await backend.poll_once()
        await backend.drain()

        job = await backend.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert job.error == "Cannot post: banned"

    @pytest.mark.asyncio
    async def test_transient_failure_retries_and_audits_each_attempt(
        self, backend, clock, event_log, post_records, post_payload,
    ):
        client = FakeSubmissionClient(result=SubmissionResult(success=False, error="503"))
        _worker(FakeProvider(client=client), event_log, post_records).register(backend)
        job_id = await backend.enqueue(QueueNames.POST, post_payload, max_attempts=2)

        await backend.poll_once()
        await backend.drain()
        assert (await backend.get_job(job_id)).status == JobStatus.DELAYED

        clock.advance(minutes=1)
        await backend.poll_once()
        await backend.drain()

        job = await backend.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 2
        assert [e.event_type for e in event_log.entries] == [EventType.JOB_FAILED, EventType.JOB_FAILED]
