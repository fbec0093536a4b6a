"""Global schedule state shared by the gate and the orchestrator.

The state is passed into each step as a value and a new value is returned;
only the gate writes it back to the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import FrozenSet, Iterable, Optional

DEFAULT_UPDATE_INTERVAL_MINUTES = 60
DEFAULT_START_TIME = "06:00"


@dataclass(frozen=True)
class GlobalScheduleState:
    lock_until: Optional[datetime] = None
    lock_owner: Optional[str] = None
    last_posted_at: Optional[datetime] = None
    update_interval_minutes: int = DEFAULT_UPDATE_INTERVAL_MINUTES
    start_time: str = DEFAULT_START_TIME
    last_reset_date: Optional[str] = None  # YYYY-MM-DD in the target timezone
    posts_today: int = 0
    disabled_sources: FrozenSet[str] = field(default_factory=frozenset)

    # run bookkeeping
    consecutive_failed_runs: int = 0
    last_run_at: Optional[datetime] = None
    avg_minutes_between_posts: Optional[float] = None
    trigger_count: int = 0

    def with_disabled(self, source_id: str) -> "GlobalScheduleState":
        return replace(self, disabled_sources=self.disabled_sources | {source_id})

    def with_cleared_disabled(self) -> "GlobalScheduleState":
        return replace(self, disabled_sources=frozenset())

    def is_disabled(self, source_id: str) -> bool:
        return source_id in self.disabled_sources


def frozen_ids(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    return frozenset(str(v) for v in (values or []) if v)
