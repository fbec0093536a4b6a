"""Environment-driven configuration for the relay."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from newsrelay.ingestion.sources import DEFAULT_AGGREGATOR_URL
from newsrelay.scheduling.time_window import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

DEFAULT_PG_DSN = "dbname=newsrelay user=relay password=relaypass host=localhost port=5432"


def parse_source_overrides(raw: str) -> Dict[str, Tuple[int, bool]]:
    """Parse ``id:priority:enabled,...`` (enabled is optional, default true)."""
    out: Dict[str, Tuple[int, bool]] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        parts = [p.strip() for p in item.split(":")]
        if len(parts) < 2 or not parts[0]:
            raise ValueError(f"invalid RELAY_SOURCES entry: {item!r}")
        priority = int(parts[1])
        enabled = parts[2].lower() not in ("0", "false", "no", "off") if len(parts) > 2 else True
        out[parts[0]] = (priority, enabled)
    return out


@dataclass(frozen=True)
class RelayConfig:
    """Relay settings. Schedule defaults (interval, start time) live in the stored state."""

    store_backend: str = "postgres"  # postgres | sqlite
    pg_dsn: str = DEFAULT_PG_DSN
    sqlite_path: str = "newsrelay.db"

    timezone: str = DEFAULT_TIMEZONE
    lock_ttl_minutes: int = 10
    run_budget_seconds: float = 45.0
    http_timeout: float = 10.0
    min_body_chars: int = 200
    semantic_threshold: float = 0.92
    semantic_window_hours: int = 24
    default_feed_cooldown: int = 30

    aggregator_url: str = DEFAULT_AGGREGATOR_URL
    source_overrides: Dict[str, Tuple[int, bool]] = field(default_factory=dict)

    schedule_minutes: int = 30
    notify_webhook_url: Optional[str] = None
    summary_webhook_url: Optional[str] = None
    cron_secret: Optional[str] = None

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "RelayConfig":
        """Load and validate configuration from environment variables"""
        if dotenv:
            load_dotenv()
        env = os.environ
        config = cls(
            store_backend=env.get("RELAY_STORE", "postgres").strip().lower(),
            pg_dsn=env.get("PG_DSN", DEFAULT_PG_DSN),
            sqlite_path=env.get("RELAY_SQLITE_PATH", "newsrelay.db"),
            timezone=env.get("RELAY_TIMEZONE", DEFAULT_TIMEZONE),
            lock_ttl_minutes=int(env.get("RELAY_LOCK_TTL_MINUTES", "10")),
            run_budget_seconds=float(env.get("RELAY_RUN_BUDGET_SECONDS", "45")),
            http_timeout=float(env.get("RELAY_HTTP_TIMEOUT", "10")),
            min_body_chars=int(env.get("RELAY_MIN_BODY_CHARS", "200")),
            semantic_threshold=float(env.get("RELAY_SEMANTIC_THRESHOLD", "0.92")),
            semantic_window_hours=int(env.get("RELAY_SEMANTIC_WINDOW_HOURS", "24")),
            default_feed_cooldown=int(env.get("RELAY_DEFAULT_FEED_COOLDOWN", "30")),
            aggregator_url=env.get("RELAY_AGGREGATOR_URL", DEFAULT_AGGREGATOR_URL),
            source_overrides=parse_source_overrides(env.get("RELAY_SOURCES", "")),
            schedule_minutes=int(env.get("RELAY_SCHEDULE_MINUTES", "30")),
            notify_webhook_url=env.get("NOTIFY_WEBHOOK_URL") or None,
            summary_webhook_url=env.get("SUMMARY_WEBHOOK_URL") or None,
            cron_secret=env.get("CRON_SECRET") or None,
        )
        config._validate()
        return config

    def _validate(self) -> None:
        errors = []
        if self.store_backend not in ("postgres", "sqlite"):
            errors.append(f"RELAY_STORE must be 'postgres' or 'sqlite', got {self.store_backend!r}")
        if self.store_backend == "postgres" and not self.pg_dsn:
            errors.append("PG_DSN is required for the postgres store")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"RELAY_TIMEZONE is not a known timezone: {self.timezone!r}")
        if self.lock_ttl_minutes <= 0:
            errors.append("RELAY_LOCK_TTL_MINUTES must be positive")
        if self.run_budget_seconds <= 0:
            errors.append("RELAY_RUN_BUDGET_SECONDS must be positive")
        if not 0.0 < self.semantic_threshold <= 1.0:
            errors.append("RELAY_SEMANTIC_THRESHOLD must be in (0, 1]")
        if self.schedule_minutes <= 0:
            errors.append("RELAY_SCHEDULE_MINUTES must be positive")
        if errors:
            raise ValueError("Configuration errors: " + "; ".join(errors))

        if not self.notify_webhook_url:
            logger.info("NOTIFY_WEBHOOK_URL not set; notifications are disabled")
