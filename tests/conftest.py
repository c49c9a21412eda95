"""Shared test fixtures for PostQueue."""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Optional

from database.event_log import InMemoryEventLog
from database.post_records import InMemoryPostRecordStore
from database.store_factory import reset_store
from database.store_memory import InMemoryJobStore
from job_queue.backend import QueueBackend
from models.schemas import (
    EligibilityResult, MediaAsset, SubmissionRequest, SubmissionResult,
)
from workers.collaborators import MediaResolver, SubmissionClient, SubmissionClientProvider


# Tuesday, 15:00 UTC (10:00 in New York)
TUESDAY = datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; call it to read the time."""

    def __init__(self, start: datetime = TUESDAY):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSubmissionClient(SubmissionClient):

    def __init__(self, result: Optional[SubmissionResult] = None, error: Optional[Exception] = None):
        self.result = result or SubmissionResult(
            success=True, external_id="t3_abc123", url="https://example.com/p/abc123",
        )
        self.error = error
        self.requests: list[SubmissionRequest] = []

    async def submit(self, request: SubmissionRequest) -> SubmissionResult:
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.result


class FakeProvider(SubmissionClientProvider):

    def __init__(self, client: Optional[FakeSubmissionClient] = None,
                 eligibility: Optional[EligibilityResult] = None, has_account: bool = True):
        self.client = client or FakeSubmissionClient()
        self.eligibility = eligibility or EligibilityResult(ok=True)
        self.has_account = has_account
        self.eligibility_checks: list[tuple[int, str]] = []

    async def resolve_for_owner(self, owner_id: int) -> Optional[SubmissionClient]:
        return self.client if self.has_account else None

    async def check_eligibility(self, owner_id: int, destination: str) -> EligibilityResult:
        self.eligibility_checks.append((owner_id, destination))
        return self.eligibility


class FakeMediaResolver(MediaResolver):

    def __init__(self, assets: Optional[dict[str, str]] = None, error: Optional[Exception] = None):
        self.assets = assets or {}
        self.error = error

    async def resolve(self, media_key: str, owner_id: int) -> Optional[MediaAsset]:
        if self.error:
            raise self.error
        url = self.assets.get(media_key)
        return MediaAsset(url=url) if url else None


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_store()
    yield
    reset_store()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def backend(store, clock) -> QueueBackend:
    return QueueBackend(
        store,
        clock=clock,
        poll_interval_seconds=0.01,
        backoff_base_seconds=60,
        job_timeout_seconds=5,
    )


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def post_records() -> InMemoryPostRecordStore:
    return InMemoryPostRecordStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def post_payload() -> dict:
    return {
        "owner_id": 42,
        "destination": "workday_humor",
        "title_final": "Monday again",
        "body_final": "Coffee first.",
    }
