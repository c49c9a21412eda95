"""
Scheduling Optimizer — pick a posting time per destination.

Windows come from engagement history when there is enough of it (at least
`min_samples` post.engagement events for the destination in the last
`history_days`), otherwise from static per-category defaults matched on
the destination name.

History derivation:
  - bucket engagement score by local hour (caller's timezone)
  - hours scoring above `high_engagement_ratio` × the best hour form windows
  - a window's confidence is its mean hourly score over the best hour's
  - keep the top `max_windows` by confidence
"""
from __future__ import annotations

import random
import structlog
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Optional, Union
from zoneinfo import ZoneInfo

from database.event_log import BaseEventLog
from models.schemas import (
    DayPreference, DestinationRef, DestinationTiming, EngagementEvent,
    EngagementMetrics, EventLogEntry, EventType, SchedulingWindow,
    SendTimeSuggestion, utcnow,
)

logger = structlog.get_logger()

NEW_YORK = "America/New_York"
UTC = ZoneInfo("UTC")

DEFAULT_WINDOWS: dict[str, list[SchedulingWindow]] = {
    # Evening peak
    "general": [
        SchedulingWindow(start_hour=19, end_hour=23, timezone=NEW_YORK, confidence=0.7),
        SchedulingWindow(start_hour=21, end_hour=24, timezone="America/Los_Angeles", confidence=0.6),
    ],
    # Lunch break and after work
    "workday": [
        SchedulingWindow(start_hour=12, end_hour=14, timezone=NEW_YORK, confidence=0.5),
        SchedulingWindow(start_hour=17, end_hour=22, timezone=NEW_YORK, confidence=0.8),
    ],
    "weekend": [
        SchedulingWindow(start_hour=10, end_hour=16, timezone=NEW_YORK, confidence=0.7),
        SchedulingWindow(start_hour=20, end_hour=24, timezone=NEW_YORK, confidence=0.8),
    ],
    "international": [
        SchedulingWindow(start_hour=14, end_hour=18, timezone="UTC", confidence=0.6),
        SchedulingWindow(start_hour=20, end_hour=24, timezone="UTC", confidence=0.7),
    ],
}

# First match wins
CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("workday", ("workday", "office")),
    ("weekend", ("weekend", "saturday", "sunday")),
    ("international", ("eu", "uk", "international")),
]


def category_for(destination: str) -> str:
    name = destination.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in name for k in keywords):
            return category
    return "general"


def default_windows(category: str) -> list[SchedulingWindow]:
    return [w.model_copy() for w in DEFAULT_WINDOWS.get(category, DEFAULT_WINDOWS["general"])]


def _sunday_based(day: date) -> int:
    """Day of week with Sunday = 0 … Saturday = 6."""
    return (day.weekday() + 1) % 7


def _is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def _matches_preference(day: date, preference: Optional[DayPreference]) -> bool:
    if preference == DayPreference.WEEKEND:
        return _is_weekend(day)
    if preference == DayPreference.WEEKDAY:
        return not _is_weekend(day)
    return True


def _apply_preference(day: date, preference: Optional[DayPreference]) -> date:
    dow = _sunday_based(day)
    if preference == DayPreference.WEEKEND and not _is_weekend(day):
        return day + timedelta(days=(6 - dow) % 7)
    if preference == DayPreference.WEEKDAY and _is_weekend(day):
        return day + timedelta(days=(8 - dow) % 7)
    return day


class SchedulingOptimizer:

    def __init__(
        self,
        event_log: BaseEventLog,
        *,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_timezone: str = NEW_YORK,
        history_days: int = 30,
        min_samples: int = 10,
        history_limit: int = 100,
        high_engagement_ratio: float = 0.6,
        max_windows: int = 3,
    ):
        self.event_log = event_log
        self._rng = rng or random.Random()
        self._clock = clock or utcnow
        self.default_timezone = default_timezone
        self.history_days = history_days
        self.min_samples = min_samples
        self.history_limit = history_limit
        self.high_engagement_ratio = high_engagement_ratio
        self.max_windows = max_windows

    def now(self) -> datetime:
        return self._clock()

    # ── Send time ─────────────────────────────────────────────

    async def choose_send_time(
        self,
        destination: str,
        timezone: Optional[str] = None,
        day_preference: Optional[Union[DayPreference, str]] = None,
        now: Optional[datetime] = None,
    ) -> datetime:
        """
        Return a timezone-aware datetime strictly after `now`, inside the
        destination's best window and on a day matching `day_preference`.
        """
        suggestion = await self.suggest_send_time(destination, timezone, day_preference, now)
        return suggestion.run_at

    async def suggest_send_time(
        self,
        destination: str,
        timezone: Optional[str] = None,
        day_preference: Optional[Union[DayPreference, str]] = None,
        now: Optional[datetime] = None,
    ) -> SendTimeSuggestion:
        timezone = timezone or self.default_timezone
        preference = DayPreference(day_preference) if day_preference else None
        now = now or self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)

        timing = await self.get_destination_timing(destination, timezone, now=now)
        window = self.best_window(timing.windows)
        tz = ZoneInfo(window.timezone)

        day = _apply_preference(now.astimezone(tz).date(), preference)
        hour = self._rng.randrange(window.start_hour, window.end_hour)
        minute = self._rng.randrange(60)

        target = datetime.combine(day, time(hour, minute), tzinfo=tz)
        while target <= now or not _matches_preference(target.date(), preference):
            day += timedelta(days=1)
            target = datetime.combine(day, time(hour, minute), tzinfo=tz)

        logger.info("send_time_chosen", destination=destination,
                    source=timing.source, window_start=window.start_hour,
                    window_end=window.end_hour, timezone=window.timezone,
                    run_at=target.isoformat())
        return SendTimeSuggestion(run_at=target, window=window, source=timing.source)

    @staticmethod
    def best_window(windows: list[SchedulingWindow]) -> SchedulingWindow:
        if not windows:
            return default_windows("general")[0]
        best = windows[0]
        for w in windows[1:]:
            if w.confidence > best.confidence:
                best = w
        return best

    # ── Timing analysis ───────────────────────────────────────

    async def get_destination_timing(
        self,
        destination: str,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DestinationTiming:
        timezone = timezone or self.default_timezone
        now = now or self._clock()
        try:
            events = await self.event_log.recent(
                EventType.POST_ENGAGEMENT,
                since=now - timedelta(days=self.history_days),
                limit=self.history_limit,
                meta_match={"destination": destination},
            )
        except Exception as e:
            logger.error("engagement_history_failed", destination=destination, error=str(e))
            return self._heuristic_timing(destination, now)

        if len(events) < self.min_samples:
            return self._heuristic_timing(destination, now)

        hourly = self.hourly_engagement(events, timezone)
        windows = self.derive_windows(hourly, timezone)
        logger.debug("destination_timing_derived", destination=destination,
                     samples=len(events), windows=len(windows))
        return DestinationTiming(
            destination=destination, windows=windows,
            last_analyzed=now, source="history",
        )

    def _heuristic_timing(self, destination: str, now: datetime) -> DestinationTiming:
        return DestinationTiming(
            destination=destination,
            windows=default_windows(category_for(destination)),
            last_analyzed=now,
            source="heuristic",
        )

    @staticmethod
    def event_score(meta: dict[str, Any]) -> float:
        if "score" in meta and meta["score"] is not None:
            return float(meta["score"])
        engagement = meta.get("engagement")
        if isinstance(engagement, dict):
            return EngagementMetrics.model_validate(engagement).score
        return 0.0

    def to_engagement_event(self, entry: EventLogEntry, tz: ZoneInfo) -> EngagementEvent:
        """Bucket an event log row by the local hour the post went live."""
        when = entry.created_at
        posted_at = entry.meta.get("posted_at")
        if posted_at:
            try:
                when = datetime.fromisoformat(posted_at)
            except (TypeError, ValueError):
                logger.debug("engagement_posted_at_invalid", event_id=entry.id)
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        return EngagementEvent(
            destination=entry.meta.get("destination", ""),
            hour_of_day=when.astimezone(tz).hour,
            score=self.event_score(entry.meta),
            recorded_at=entry.created_at,
        )

    def hourly_engagement(self, events: list[EventLogEntry], timezone: str) -> list[float]:
        tz = ZoneInfo(timezone)
        hourly = [0.0] * 24
        for entry in events:
            event = self.to_engagement_event(entry, tz)
            hourly[event.hour_of_day] += event.score
        return hourly

    def derive_windows(self, hourly: list[float], timezone: str) -> list[SchedulingWindow]:
        peak = max(hourly)
        if peak <= 0:
            return default_windows("general")

        threshold = peak * self.high_engagement_ratio
        windows: list[SchedulingWindow] = []
        start = None
        for hour in range(25):
            high = hour < 24 and hourly[hour] > threshold
            if high and start is None:
                start = hour
            elif not high and start is not None:
                span = hourly[start:hour]
                windows.append(SchedulingWindow(
                    start_hour=start, end_hour=hour, timezone=timezone,
                    confidence=min(1.0, (sum(span) / len(span)) / peak),
                ))
                start = None

        windows.sort(key=lambda w: w.confidence, reverse=True)
        return windows[:self.max_windows] or default_windows("general")

    # ── Engagement recording ──────────────────────────────────

    async def record_engagement(
        self,
        ref: DestinationRef,
        metrics: Union[EngagementMetrics, dict[str, Any]],
    ) -> None:
        """Append a post.engagement event. Never raises."""
        try:
            if not isinstance(metrics, EngagementMetrics):
                metrics = EngagementMetrics.model_validate(metrics)
            posted_at = ref.posted_at or self._clock()
            if posted_at.tzinfo is None:
                posted_at = posted_at.replace(tzinfo=UTC)
            await self.event_log.append(None, EventType.POST_ENGAGEMENT, {
                "post_id": ref.post_id,
                "destination": ref.destination,
                "hour_of_day": posted_at.astimezone(UTC).hour,
                "posted_at": posted_at.isoformat(),
                "score": metrics.score,
                "engagement": metrics.model_dump(),
                "analyzed_at": self._clock().isoformat(),
            })
        except Exception as e:
            logger.error("engagement_record_failed", destination=ref.destination,
                         post_id=ref.post_id, error=str(e))
