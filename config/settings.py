"""
Configuration loader for the PostQueue system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./postqueue.db"             # postgresql:// | sqlite://
    store_backend: str = "sql"                         # "sql" | "memory"
    echo: bool = False


@dataclass
class QueueConfig:
    enabled: bool = True
    poll_interval_seconds: float = 2.0
    default_max_attempts: int = 3
    backoff_base_seconds: int = 60      # retry n waits 2^(n-1) * base
    job_timeout_seconds: int = 300      # handler deadline + stale-active reaper age
    reaper_grace_seconds: float = 30    # extra age before a stale active job is reaped
    startup_check_attempts: int = 3


@dataclass
class WorkerConfig:
    post_queue_name: str = "post-submission"
    post_concurrency: int = 2
    drain_on_shutdown: bool = True


@dataclass
class GatewayConfig:
    """HTTP gateway that owns destination accounts, posting rules and media."""
    base_url: str = ""                  # empty → post worker not registered
    api_key: str = ""
    timeout_seconds: float = 30.0
    endpoints: dict[str, str] = field(default_factory=lambda: {
        "resolve_account": "/owners/{owner_id}/account",
        "eligibility": "/owners/{owner_id}/eligibility",
        "submit": "/accounts/{account_id}/submissions",
        "media": "/owners/{owner_id}/media/{media_key}",
    })

    @property
    def configured(self) -> bool:
        # An unset ${VAR} survives substitution verbatim
        return bool(self.base_url) and "${" not in self.base_url

    @property
    def bearer_token(self) -> str:
        return "" if "${" in self.api_key else self.api_key


@dataclass
class SchedulingConfig:
    default_timezone: str = "America/New_York"
    history_days: int = 30
    min_samples: int = 10
    history_limit: int = 100
    high_engagement_ratio: float = 0.6
    max_windows: int = 3


@dataclass
class MonitorConfig:
    enabled: bool = True
    interval_seconds: int = 30
    failure_window_minutes: int = 60


@dataclass
class Settings:
    app_name: str = "PostQueue"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "POSTQUEUE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"])
        if "worker" in raw:
            settings.worker = _section(WorkerConfig, raw["worker"])
        if "gateway" in raw:
            gateway = _section(GatewayConfig, raw["gateway"])
            gateway.endpoints = {**GatewayConfig().endpoints, **((raw["gateway"] or {}).get("endpoints") or {})}
            settings.gateway = gateway
        if "scheduling" in raw:
            settings.scheduling = _section(SchedulingConfig, raw["scheduling"])
        if "monitor" in raw:
            settings.monitor = _section(MonitorConfig, raw["monitor"])

    # DATABASE_URL wins over the file so containers can point at a real database
    if os.environ.get("DATABASE_URL"):
        settings.database.url = os.environ["DATABASE_URL"]

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
