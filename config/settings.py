"""
Configuration loader for the Fundify welcome pipeline.
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
    url: str = "sqlite:///./fundify.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                  # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "redis"              # "redis" for production, "memory" for dev/tests
    url: str = ""                       # empty → queueing disabled
    name: str = "jobs.welcome"
    consumer_group: str = "welcome-workers"
    consumer_name: str = ""
    prefetch: int = 5                   # max unacknowledged jobs per worker
    max_attempts: int = 3               # processing attempts before dead-letter
    retry_backoff_ms: int = 60_000      # base for exponential retry backoff
    max_inline_wait_ms: int = 60_000    # longer waits go to the delayed index
    delayed_promote_interval: int = 5   # seconds between delayed-index scans
    reclaim_idle_ms: int = 300_000      # pending entries older than this are reclaimed
    reclaim_interval: int = 30          # seconds between reclaim scans
    run_worker_in_api: bool = False

    def __post_init__(self):
        # An in-process wait must end before the delivery can be reclaimed elsewhere
        if self.max_inline_wait_ms >= self.reclaim_idle_ms:
            raise ValueError(
                f"queue.max_inline_wait_ms ({self.max_inline_wait_ms}) must be below "
                f"queue.reclaim_idle_ms ({self.reclaim_idle_ms})"
            )


@dataclass
class Settings:
    app_name: str = "Fundify"
    debug: bool = False
    log_level: str = "INFO"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)


_settings: Optional[Settings] = None

_ENV_PATTERN = re.compile(r'\$\{(\w+)\}')


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return _ENV_PATTERN.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _resolved(value: str) -> str:
    """An unresolved ${VAR} counts as not configured."""
    if not value or _ENV_PATTERN.search(value):
        return ""
    return value


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, falling back to environment defaults."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FUNDIFY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = raw.get("log_level", settings.log_level)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=_resolved(db.get("url", "")) or settings.database.url,
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "queue" in raw:
            q = raw["queue"]
            defaults = QueueConfig()
            settings.queue = QueueConfig(
                backend=q.get("backend", defaults.backend),
                url=_resolved(q.get("url", "")),
                name=q.get("name", defaults.name),
                consumer_group=q.get("consumer_group", defaults.consumer_group),
                consumer_name=q.get("consumer_name", defaults.consumer_name),
                prefetch=int(q.get("prefetch", defaults.prefetch)),
                max_attempts=int(q.get("max_attempts", defaults.max_attempts)),
                retry_backoff_ms=int(q.get("retry_backoff_ms", defaults.retry_backoff_ms)),
                max_inline_wait_ms=int(q.get("max_inline_wait_ms", defaults.max_inline_wait_ms)),
                delayed_promote_interval=int(
                    q.get("delayed_promote_interval", defaults.delayed_promote_interval)
                ),
                reclaim_idle_ms=int(q.get("reclaim_idle_ms", defaults.reclaim_idle_ms)),
                reclaim_interval=int(q.get("reclaim_interval", defaults.reclaim_interval)),
                run_worker_in_api=bool(q.get("run_worker_in_api", defaults.run_worker_in_api)),
            )

    # Broker URL falls back to the environment; absence disables queueing
    if not settings.queue.url:
        settings.queue.url = os.environ.get("REDIS_URL", "")

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
