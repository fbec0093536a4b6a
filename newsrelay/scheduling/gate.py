"""Scheduling gate wrapped around every orchestrator invocation.

LOCK_CHECK -> ACQUIRE_LOCK -> TIME_WINDOW_CHECK -> COOLDOWN_CHECK ->
DAILY_RESET -> RUN -> RELEASE_LOCK

The gate is the only writer of the schedule state. It reads the state once,
hands it to the orchestrator and persists the difference afterwards: newly
disabled sources as a set union, a cleared set, the daily counter as an
atomic increment. The read and the writes are not one transaction, so two
overlapping triggers that both pass LOCK_CHECK can both publish; the lock
TTL only bounds how long a crashed run blocks the chain.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from newsrelay.orchestration.orchestrator import Orchestrator
from newsrelay.orchestration.results import ExitReason, RunLog, RunResult
from newsrelay.scheduling.lease import Lease, TimestampLease
from newsrelay.scheduling.state import DEFAULT_UPDATE_INTERVAL_MINUTES, GlobalScheduleState
from newsrelay.scheduling.time_window import DEFAULT_TIMEZONE, is_time_window_allowed, local_date
from newsrelay.storage.base import ArticleStore, StoreError

logger = logging.getLogger(__name__)

EMA_KEEP = 0.8
EMA_NEW = 0.2

# Cooldown is bypassed after this many failed runs in a row or this long without a post.
FAILSAFE_FAILED_RUNS = 3
FAILSAFE_STALE_AFTER = timedelta(hours=4)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def in_cooldown(state: GlobalScheduleState, now: datetime) -> bool:
    if state.last_posted_at is None:
        return False
    return now - state.last_posted_at < timedelta(minutes=state.update_interval_minutes)


def cooldown_failsafe(state: GlobalScheduleState, now: datetime) -> Optional[str]:
    """Why the cooldown should be ignored this time, or None."""
    if state.consecutive_failed_runs >= FAILSAFE_FAILED_RUNS:
        return f"{state.consecutive_failed_runs} consecutive failed runs"
    if state.last_posted_at is not None and now - state.last_posted_at > FAILSAFE_STALE_AFTER:
        hours = (now - state.last_posted_at).total_seconds() / 3600
        return f"no post for {hours:.1f}h"
    return None


def daily_reset(state: GlobalScheduleState, today: str) -> Optional[GlobalScheduleState]:
    """New state for a fresh day, or None when today was already reset."""
    if state.last_reset_date == today:
        return None
    return replace(state.with_cleared_disabled(), posts_today=0, last_reset_date=today)


def run_bookkeeping(
    before: GlobalScheduleState,
    after: GlobalScheduleState,
    result: RunResult,
    now: datetime,
) -> Dict[str, object]:
    """Failure streak, last run stamp and moving average of minutes between posts."""
    fields: Dict[str, object] = {"last_run_at": now}
    if not result.success:
        fields["consecutive_failed_runs"] = before.consecutive_failed_runs + 1
        return fields
    fields["consecutive_failed_runs"] = 0
    if before.last_posted_at is not None and after.last_posted_at is not None:
        delta = (after.last_posted_at - before.last_posted_at).total_seconds() / 60
        current = before.avg_minutes_between_posts or DEFAULT_UPDATE_INTERVAL_MINUTES
        fields["avg_minutes_between_posts"] = round(current * EMA_KEEP + delta * EMA_NEW)
    else:
        fields["avg_minutes_between_posts"] = DEFAULT_UPDATE_INTERVAL_MINUTES
    return fields


class SchedulingGate:
    def __init__(
        self,
        store: ArticleStore,
        orchestrator: Orchestrator,
        *,
        lease: Optional[Lease] = None,
        tz_name: str = DEFAULT_TIMEZONE,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.lease = lease or TimestampLease()
        self.tz_name = tz_name
        self.clock = clock
        self.monotonic = monotonic

    def _skip(
        self,
        reason: ExitReason,
        run_id: str,
        started_at: datetime,
        started: float,
        dry_run: bool,
        detail: Optional[str] = None,
    ) -> RunResult:
        duration_ms = int((self.monotonic() - started) * 1000)
        logger.info(f"[Gate] Skipping run {run_id}: {reason.value}" + (f" ({detail})" if detail else ""))
        if not dry_run:
            self.store.append_run_log(
                RunLog(
                    run_id=run_id,
                    started_at=started_at,
                    duration_ms=duration_ms,
                    success=False,
                    exit_reason=reason.value,
                    detail=detail,
                )
            )
        return RunResult(success=False, exit_reason=reason, duration_ms=duration_ms, run_id=run_id)

    def run(self, force: bool = False, dry_run: bool = False) -> RunResult:
        run_id = uuid.uuid4().hex
        started = self.monotonic()
        now = self.clock()
        logger.info(f"[Gate] Trigger {run_id} at {now.isoformat()} (force={force}, dry_run={dry_run})")

        state = self.store.load_schedule_state()
        if self.lease.is_held(state, now):
            return self._skip(
                ExitReason.GLOBAL_LOCK_ACTIVE,
                run_id,
                now,
                started,
                dry_run,
                detail=f"locked until {state.lock_until.isoformat()}",
            )
        if state.lock_until is not None:
            logger.warning(f"[Gate] Lock expired at {state.lock_until.isoformat()}; treating it as abandoned")

        if not dry_run:
            state = self.lease.acquire(state, now)
            self.store.update_schedule_state(lock_until=state.lock_until, lock_owner=state.lock_owner)
        try:
            return self._run_locked(state, run_id, now, started, force, dry_run)
        except Exception as e:
            logger.exception(f"[Gate] Run {run_id} failed")
            if not dry_run:
                self._record_error(run_id, now, started, e)
            raise
        finally:
            if not dry_run:
                released = self.lease.release(state)
                self.store.update_schedule_state(lock_until=released.lock_until, lock_owner=released.lock_owner)
                logger.info(f"[Gate] Lock released for run {run_id}")

    def _record_error(self, run_id: str, now: datetime, started: float, error: Exception) -> None:
        try:
            self.store.append_run_log(
                RunLog(
                    run_id=run_id,
                    started_at=now,
                    duration_ms=int((self.monotonic() - started) * 1000),
                    success=False,
                    exit_reason=ExitReason.ERROR.value,
                    detail=repr(error),
                )
            )
        except StoreError as log_error:
            # The caller re-raises the run exception.
            logger.error(f"[Gate] Could not record error run log: {log_error}")

    def _run_locked(
        self,
        state: GlobalScheduleState,
        run_id: str,
        now: datetime,
        started: float,
        force: bool,
        dry_run: bool,
    ) -> RunResult:
        if force:
            logger.info("[Gate] Force mode: bypassing time window and cooldown")
        else:
            window = is_time_window_allowed(now, state.start_time, self.tz_name)
            logger.info(
                f"[Gate] Local time {window.local_time} ({self.tz_name}), "
                f"start {window.target_start_time}, allowed={window.allowed}"
            )
            if not window.allowed:
                return self._skip(
                    ExitReason.BEFORE_START_TIME,
                    run_id,
                    now,
                    started,
                    dry_run,
                    detail=f"local {window.local_time} < {window.target_start_time}",
                )
            failsafe = cooldown_failsafe(state, now)
            if failsafe:
                logger.warning(f"[Gate] Failsafe active ({failsafe}); ignoring cooldown")
            elif in_cooldown(state, now):
                minutes = (now - state.last_posted_at).total_seconds() / 60
                return self._skip(
                    ExitReason.GLOBAL_COOLDOWN,
                    run_id,
                    now,
                    started,
                    dry_run,
                    detail=f"last post {minutes:.1f} min ago, interval {state.update_interval_minutes} min",
                )

        today = local_date(now, self.tz_name)
        reset = daily_reset(state, today)
        if reset is not None:
            logger.info(f"[Gate] New day {today}: resetting daily counter and source chain")
            state = reset
            if not dry_run:
                self.store.update_schedule_state(posts_today=0, last_reset_date=today)
                self.store.clear_disabled_sources()

        before = state
        result, after = self.orchestrator.run(
            state, force=force, dry_run=dry_run, run_id=run_id, started=started
        )
        if not dry_run:
            self._persist(before, after, result)
        return result

    def _persist(self, before: GlobalScheduleState, after: GlobalScheduleState, result: RunResult) -> None:
        if after.disabled_sources >= before.disabled_sources:
            added = after.disabled_sources - before.disabled_sources
        else:
            self.store.clear_disabled_sources()
            added = after.disabled_sources
        if added:
            self.store.add_disabled_sources(added)
        if after.last_posted_at is not None and after.last_posted_at != before.last_posted_at:
            self.store.record_post(after.last_posted_at)
        self.store.update_schedule_state(**run_bookkeeping(before, after, result, self.clock()))
