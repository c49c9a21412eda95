"""
Post Worker — processes the post-submission queue.

Per attempt:
  1. resolve the owner's submission client        (none → NoActiveAccountError)
  2. check destination eligibility                (rejected → PolicyRejectedError)
  3. resolve attached media; failures degrade to a text-only post
  4. submit; success → post record "sent" + job.completed audit event
  5. any failure → post record "failed" + job.failed audit event, then
     re-raise so the queue applies its retry policy

Account and policy errors are non-retryable: another attempt would hit the
same wall, so the job fails on the first attempt.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import ValidationError

from database.event_log import BaseEventLog
from database.post_records import BasePostRecordStore
from job_queue.backend import QueueBackend
from job_queue.errors import JobFailedError, NonRetryableJobError
from models.schemas import (
    EventType, PostRecordStatus, PostSubmissionPayload, QueueNames,
    SubmissionRequest, SubmissionResult, utcnow,
)
from workers.collaborators import MediaResolver, SubmissionClientProvider

logger = structlog.get_logger()


class NoActiveAccountError(NonRetryableJobError):
    def __init__(self, owner_id: int):
        self.owner_id = owner_id
        super().__init__(f"No active account found for owner {owner_id}")


class PolicyRejectedError(NonRetryableJobError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Cannot post: {reason}")


class SubmissionFailedError(JobFailedError):
    """The destination accepted the request but reported a failure."""


class PostWorker:

    def __init__(
        self,
        provider: SubmissionClientProvider,
        event_log: BaseEventLog,
        post_records: BasePostRecordStore,
        media: Optional[MediaResolver] = None,
        *,
        queue_name: str = QueueNames.POST,
        concurrency: int = 2,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.provider = provider
        self.event_log = event_log
        self.post_records = post_records
        self.media = media
        self.queue_name = queue_name
        self.concurrency = concurrency
        self._clock = clock or utcnow

    def register(self, backend: QueueBackend) -> None:
        backend.register_processor(self.queue_name, self.process, concurrency=self.concurrency)
        logger.info("post_worker_registered", queue=self.queue_name, concurrency=self.concurrency)

    async def process(self, payload: dict[str, Any], job_id: int) -> dict[str, Any]:
        try:
            data = PostSubmissionPayload.model_validate(payload)
        except ValidationError as e:
            logger.error("post_job_invalid_payload", job_id=job_id, error=str(e))
            raise NonRetryableJobError(f"Invalid post payload: {e}") from e

        logger.info("post_job_processing", job_id=job_id,
                    post_job_id=data.post_job_id, owner_id=data.owner_id,
                    destination=data.destination)

        try:
            result = await self._submit(data)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.error("post_job_failed", job_id=job_id,
                         post_job_id=data.post_job_id, destination=data.destination,
                         error_type=type(e).__name__, error=error)
            await self._update_record(data.post_job_id, PostRecordStatus.FAILED, {
                "error": error,
                "failed_at": self._clock().isoformat(),
            })
            await self._log_event(data.owner_id, EventType.JOB_FAILED, {
                "post_job_id": data.post_job_id,
                "job_id": job_id,
                "destination": data.destination,
                "error": error,
            })
            raise

        await self._update_record(data.post_job_id, PostRecordStatus.SENT, {
            "external_id": result.external_id,
            "url": result.url,
            "completed_at": self._clock().isoformat(),
        })
        await self._log_event(data.owner_id, EventType.JOB_COMPLETED, {
            "post_job_id": data.post_job_id,
            "job_id": job_id,
            "destination": data.destination,
            "result": result.model_dump(mode="json"),
        })
        logger.info("post_job_sent", job_id=job_id, post_job_id=data.post_job_id,
                    external_id=result.external_id)
        return {"success": True, "external_id": result.external_id, "url": result.url}

    async def _submit(self, data: PostSubmissionPayload) -> SubmissionResult:
        client = await self.provider.resolve_for_owner(data.owner_id)
        if client is None:
            raise NoActiveAccountError(data.owner_id)

        eligibility = await self.provider.check_eligibility(data.owner_id, data.destination)
        if not eligibility.ok:
            raise PolicyRejectedError(eligibility.reason or "not eligible")

        request = SubmissionRequest(
            destination=data.destination,
            title=data.title_final,
            body=data.body_final,
        )
        if data.media_key:
            request.url = await self._resolve_media_url(data.media_key, data.owner_id)

        result = await client.submit(request)
        if not result.success:
            raise SubmissionFailedError(result.error or "Submission failed")
        return result

    async def _resolve_media_url(self, media_key: str, owner_id: int) -> Optional[str]:
        """Best effort; None means post as text."""
        if self.media is None:
            logger.warning("media_resolver_missing", media_key=media_key)
            return None
        try:
            asset = await self.media.resolve(media_key, owner_id)
        except Exception as e:
            logger.warning("media_attach_failed", media_key=media_key, error=str(e))
            return None
        if asset is None:
            logger.warning("media_not_found", media_key=media_key, owner_id=owner_id)
            return None
        return asset.url

    async def _update_record(self, post_job_id: Optional[int], status: PostRecordStatus, result: dict[str, Any]) -> None:
        if post_job_id is None:
            return
        try:
            await self.post_records.update_status(post_job_id, status, result)
        except Exception as e:
            logger.error("post_record_update_failed", post_job_id=post_job_id,
                         status=status.value, error=str(e))

    async def _log_event(self, owner_id: int, event_type: str, meta: dict[str, Any]) -> None:
        try:
            await self.event_log.append(owner_id, event_type, meta)
        except Exception as e:
            logger.error("event_log_append_failed", event_type=event_type, error=str(e))
