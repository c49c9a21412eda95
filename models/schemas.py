"""
Core data models for the PostQueue system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    PENDING = "pending"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class QueueNames:
    POST = "post-submission"


class DayPreference(str, Enum):
    WEEKDAY = "weekday"
    WEEKEND = "weekend"


class PostRecordStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class EventType:
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    POST_ENGAGEMENT = "post.engagement"


# ──────────────────────────────────────────────────────────────
#  Job — a persisted unit of deferred work
# ──────────────────────────────────────────────────────────────

class Job(BaseModel):
    id: int
    queue_name: str
    payload: dict[str, Any] = {}
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    delay_until: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class FailureStats(BaseModel):
    failure_rate: float
    total_jobs: int
    failed_jobs: int
    window_minutes: int


# ──────────────────────────────────────────────────────────────
#  Payloads — one model per queue name
# ──────────────────────────────────────────────────────────────

class PostSubmissionPayload(BaseModel):
    """Payload of the post-submission queue."""
    owner_id: int
    destination: str = Field(min_length=1)
    title_final: str = Field(min_length=1)
    body_final: str = ""
    media_key: Optional[str] = None
    post_job_id: Optional[int] = None             # caller-owned post record


PAYLOAD_TYPES: dict[str, type[BaseModel]] = {
    QueueNames.POST: PostSubmissionPayload,
}


def payload_type_for(queue_name: str) -> Optional[type[BaseModel]]:
    return PAYLOAD_TYPES.get(queue_name)


# ──────────────────────────────────────────────────────────────
#  Scheduling
# ──────────────────────────────────────────────────────────────

class SchedulingWindow(BaseModel):
    start_hour: int = Field(ge=0, le=23)
    end_hour: int = Field(ge=1, le=24)
    timezone: str = "America/New_York"
    confidence: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_order(self) -> "SchedulingWindow":
        if self.start_hour >= self.end_hour:
            raise ValueError("start_hour must be before end_hour")
        return self


class DestinationTiming(BaseModel):
    destination: str
    windows: list[SchedulingWindow]
    last_analyzed: datetime = Field(default_factory=utcnow)
    source: str = "heuristic"                     # "history" | "heuristic"


class SendTimeSuggestion(BaseModel):
    run_at: datetime
    window: SchedulingWindow
    source: str = "heuristic"


class EngagementEvent(BaseModel):
    destination: str
    hour_of_day: int = Field(ge=0, le=23)
    score: float = 0.0
    recorded_at: datetime = Field(default_factory=utcnow)


class EngagementMetrics(BaseModel):
    reactions: int = 0                            # upvotes, likes, …
    comments: int = 0
    awards: int = 0

    @model_validator(mode="before")
    @classmethod
    def _accept_upvotes(cls, data: Any) -> Any:
        if isinstance(data, dict) and "upvotes" in data and "reactions" not in data:
            data = {**data, "reactions": data["upvotes"]}
        return data

    @property
    def score(self) -> float:
        return float(self.reactions + 3 * self.comments)


class DestinationRef(BaseModel):
    destination: str
    post_id: Optional[int] = None
    posted_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Submission — third-party posting collaborator types
# ──────────────────────────────────────────────────────────────

class EligibilityResult(BaseModel):
    ok: bool
    reason: str = ""


class SubmissionRequest(BaseModel):
    destination: str
    title: str
    body: str = ""
    url: Optional[str] = None
    nsfw: bool = True


class SubmissionResult(BaseModel):
    success: bool
    external_id: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None


class MediaAsset(BaseModel):
    url: str


# ──────────────────────────────────────────────────────────────
#  Event log
# ──────────────────────────────────────────────────────────────

class EventLogEntry(BaseModel):
    id: int = 0
    owner_id: Optional[int] = None
    event_type: str
    meta: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


class PostRecord(BaseModel):
    id: int = 0
    owner_id: int
    destination: str
    title_final: str
    body_final: str = ""
    media_key: Optional[str] = None
    scheduled_at: datetime = Field(default_factory=utcnow)
    status: PostRecordStatus = PostRecordStatus.QUEUED
    result: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Monitoring
# ──────────────────────────────────────────────────────────────

class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class QueueMetrics(BaseModel):
    queue_name: str
    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    in_flight: int = 0                            # handler tasks in this process
    paused: bool = False
    failure_rate: float = 0.0
    health_status: HealthStatus = HealthStatus.HEALTHY
    collected_at: datetime = Field(default_factory=utcnow)


class SystemHealth(BaseModel):
    overall: HealthStatus = HealthStatus.HEALTHY
    queues: int = 0
    total_pending: int = 0
    total_failed: int = 0
    avg_failure_rate: float = 0.0
