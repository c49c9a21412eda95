"""
FastAPI Application — job submission, status, queue admin and scheduling.

Provides:
- Enqueue and job status endpoints
- Queue stats and admin actions (pause / resume / retry failed)
- Send-time suggestions from the scheduling optimizer
- Queue monitor snapshot
The poll loop and monitor run inside the app lifespan.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from config.settings import Settings, get_settings
from job_queue.errors import PayloadValidationError, StorageError
from models.schemas import DayPreference, JobStatus, SystemHealth
from workers.collaborators import MediaResolver, SubmissionClientProvider
from workers.runtime import Runtime, build_runtime

logger = structlog.get_logger()

router = APIRouter()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class JobCreateRequest(BaseModel):
    queue_name: str = Field(min_length=1)
    payload: dict[str, Any]
    delay_ms: Optional[int] = Field(default=None, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)


class SuggestRequest(BaseModel):
    destination: str = Field(min_length=1)
    timezone: Optional[str] = None
    day_preference: Optional[DayPreference] = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _backend(request: Request):
    backend = _runtime(request).backend
    if backend is None:
        raise HTTPException(status_code=503, detail="Queue is disabled")
    return backend


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    runtime = _runtime(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "queue_enabled": runtime.queue_enabled,
        "poll_loop_running": bool(runtime.backend and runtime.backend.is_running),
        "post_worker": runtime.post_worker is not None,
    }


# ══════════════════════════════════════════════════════════════
#  JOBS
# ══════════════════════════════════════════════════════════════

@router.post("/jobs", status_code=201)
async def create_job(req: JobCreateRequest, request: Request):
    backend = _backend(request)
    try:
        job_id = await backend.enqueue(
            req.queue_name, req.payload,
            delay=req.delay_ms, max_attempts=req.max_attempts,
        )
    except PayloadValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"job_id": job_id}


@router.get("/jobs/{job_id}")
async def get_job(job_id: int, request: Request):
    job = await _backend(request).get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  QUEUES
# ══════════════════════════════════════════════════════════════

@router.get("/queues/{queue_name}/stats")
async def queue_stats(queue_name: str, request: Request, window_minutes: int = Query(60, ge=1)):
    backend = _backend(request)
    counts = await backend.get_status_counts(queue_name)
    failure = await backend.get_failure_rate(queue_name, window_minutes)
    return {
        "queue_name": queue_name,
        "pending": counts.get(JobStatus.PENDING, 0),
        "status_counts": {status.value: n for status, n in counts.items()},
        "in_flight": backend.in_flight(queue_name),
        "paused": backend.registry.is_paused(queue_name),
        "failure": failure.model_dump(),
    }


@router.post("/queues/{queue_name}/pause")
async def pause_queue(queue_name: str, request: Request):
    backend = _backend(request)
    backend.pause(queue_name)
    return {"queue_name": queue_name, "paused": True}


@router.post("/queues/{queue_name}/resume")
async def resume_queue(queue_name: str, request: Request):
    backend = _backend(request)
    backend.resume(queue_name)
    return {"queue_name": queue_name, "paused": False}


@router.post("/queues/{queue_name}/retry-failed")
async def retry_failed(queue_name: str, request: Request):
    requeued = await _backend(request).retry_failed(queue_name)
    return {"queue_name": queue_name, "requeued": requeued}


# ══════════════════════════════════════════════════════════════
#  SCHEDULING
# ══════════════════════════════════════════════════════════════

@router.post("/scheduling/suggest")
async def suggest_send_time(req: SuggestRequest, request: Request):
    optimizer = _runtime(request).optimizer
    now = optimizer.now()
    suggestion = await optimizer.suggest_send_time(
        req.destination, req.timezone, req.day_preference, now=now,
    )
    delay_ms = int((suggestion.run_at - now).total_seconds() * 1000)
    return {
        "run_at": suggestion.run_at.isoformat(),
        "delay_ms": delay_ms,
        "window": suggestion.window.model_dump(),
        "source": suggestion.source,
    }


# ══════════════════════════════════════════════════════════════
#  MONITOR
# ══════════════════════════════════════════════════════════════

@router.get("/monitor")
async def monitor_snapshot(request: Request):
    monitor = _runtime(request).monitor
    if monitor is None:
        return {"enabled": False, "queues": {}, "system": SystemHealth().model_dump(mode="json")}
    metrics = await monitor.collect()
    return {
        "enabled": True,
        "queues": {name: m.model_dump(mode="json") for name, m in metrics.items()},
        "system": monitor.get_system_health().model_dump(mode="json"),
    }


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    *,
    provider: Optional[SubmissionClientProvider] = None,
    media: Optional[MediaResolver] = None,
    clock=None,
    poll: bool = True,
) -> FastAPI:
    """
    Build the application. Tests pass in-memory settings and fake
    collaborators; `poll=False` leaves the poll loop to the caller.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        runtime = await build_runtime(cfg, provider=provider, media=media, clock=clock)
        app.state.runtime = runtime
        await runtime.start(poll=poll)
        logger.info("postqueue_started", app=cfg.app_name, queue_enabled=runtime.queue_enabled)
        yield
        await runtime.stop()
        logger.info("postqueue_stopped")

    app = FastAPI(
        title="PostQueue API",
        description="Durable post scheduling and job queue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()
