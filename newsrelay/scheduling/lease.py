"""Run lease used by the scheduling gate.

``TimestampLease`` is a self-expiring lock stored as a single timestamp in
the schedule state: it is held while ``now < lock_until`` and abandoned after
that, whoever set it. Release does not check ownership. Two triggers that
read the state before either writes can both acquire it; the TTL only bounds
how long a crashed run blocks the next one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from newsrelay.scheduling.state import GlobalScheduleState

DEFAULT_LOCK_TTL = timedelta(minutes=10)


class Lease(ABC):
    @abstractmethod
    def is_held(self, state: GlobalScheduleState, now: datetime) -> bool:
        ...

    @abstractmethod
    def acquire(self, state: GlobalScheduleState, now: datetime) -> GlobalScheduleState:
        ...

    @abstractmethod
    def release(self, state: GlobalScheduleState) -> GlobalScheduleState:
        ...


class TimestampLease(Lease):
    def __init__(self, ttl: timedelta = DEFAULT_LOCK_TTL, owner: Optional[str] = None):
        self.ttl = ttl
        self.owner = owner

    def is_held(self, state: GlobalScheduleState, now: datetime) -> bool:
        return state.lock_until is not None and now < state.lock_until

    def acquire(self, state: GlobalScheduleState, now: datetime) -> GlobalScheduleState:
        # An expired lock is overwritten without looking at who set it.
        return replace(state, lock_until=now + self.ttl, lock_owner=self.owner)

    def release(self, state: GlobalScheduleState) -> GlobalScheduleState:
        return replace(state, lock_until=None, lock_owner=None)
