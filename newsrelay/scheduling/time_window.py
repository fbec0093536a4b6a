"""Daily start-time window evaluated in the target timezone."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from newsrelay.scheduling.state import DEFAULT_START_TIME

DEFAULT_TIMEZONE = "Asia/Dhaka"


@dataclass(frozen=True)
class TimeWindowResult:
    allowed: bool
    local_time: str
    target_start_time: str
    reason: Optional[str] = None


def parse_hhmm(value: str) -> Tuple[int, int]:
    """Parse ``"HH:MM"`` or ``"HH:MM:SS"`` (seconds ignored); raises ValueError on anything else."""
    parts = (value or "").strip().split(":")
    if len(parts) > 3:
        raise ValueError(f"invalid start time: {value!r}")
    h = int(parts[0])
    m = int(parts[1]) if len(parts) > 1 else 0
    s = int(parts[2]) if len(parts) > 2 else 0
    if not (0 <= h < 24 and 0 <= m < 60 and 0 <= s < 60):
        raise ValueError(f"invalid start time: {value!r}")
    return h, m


def local_now(now: datetime, tz_name: str = DEFAULT_TIMEZONE) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name))


def local_date(now: datetime, tz_name: str = DEFAULT_TIMEZONE) -> str:
    """Calendar date (YYYY-MM-DD) in the target timezone; keys the daily reset."""
    return local_now(now, tz_name).date().isoformat()


def is_time_window_allowed(
    now: datetime,
    start_time: str = DEFAULT_START_TIME,
    tz_name: str = DEFAULT_TIMEZONE,
) -> TimeWindowResult:
    local = local_now(now, tz_name)
    start_h, start_m = parse_hhmm(start_time)
    local_str = f"{local.hour:02d}:{local.minute:02d}"
    start_str = f"{start_h:02d}:{start_m:02d}"
    if local.hour * 60 + local.minute < start_h * 60 + start_m:
        return TimeWindowResult(False, local_str, start_str, reason="before_start_time")
    return TimeWindowResult(True, local_str, start_str)
