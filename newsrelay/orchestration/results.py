"""Run outcomes: exit reasons, per-run results and run-log rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class ExitReason(str, Enum):
    SUCCESS = "success"
    NO_SOURCES_AVAILABLE = "no_sources_available"
    SOURCE_EMPTY = "source_empty"
    SOURCE_ERROR = "source_error"
    DUPLICATE_URL = "duplicate_url"
    DUPLICATE_CONTENT = "duplicate_content"
    CONTENT_FETCH_FAILED = "content_fetch_failed"
    GLOBAL_TIMEOUT = "global_timeout"
    GLOBAL_LOCK_ACTIVE = "global_lock_active"
    BEFORE_START_TIME = "before_start_time"
    GLOBAL_COOLDOWN = "global_cooldown"
    ERROR = "error"


# Exits that trip the circuit breaker for the source that produced them.
CIRCUIT_BREAKING = frozenset(
    {
        ExitReason.SOURCE_EMPTY,
        ExitReason.SOURCE_ERROR,
        ExitReason.DUPLICATE_URL,
        ExitReason.DUPLICATE_CONTENT,
        ExitReason.CONTENT_FETCH_FAILED,
    }
)

GATE_SKIPS = frozenset(
    {
        ExitReason.GLOBAL_LOCK_ACTIVE,
        ExitReason.BEFORE_START_TIME,
        ExitReason.GLOBAL_COOLDOWN,
    }
)


@dataclass(frozen=True)
class RunResult:
    success: bool
    exit_reason: ExitReason
    duration_ms: int
    source_used: Optional[str] = None
    posted_article_id: Optional[str] = None
    run_id: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.exit_reason in GATE_SKIPS

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "exit_reason": self.exit_reason.value,
            "duration_ms": self.duration_ms,
            "source_used": self.source_used,
            "posted_article_id": self.posted_article_id,
            "run_id": self.run_id,
        }


@dataclass(frozen=True)
class RunLog:
    """Write-once row, one per live invocation."""

    run_id: str
    started_at: datetime
    duration_ms: int
    success: bool
    exit_reason: str
    source_used: Optional[str] = None
    posted_article_id: Optional[str] = None
    # Dry runs are never logged, so this stays "live".
    run_type: str = "live"
    tried_sources: List[str] = field(default_factory=list)
    detail: Optional[str] = None
