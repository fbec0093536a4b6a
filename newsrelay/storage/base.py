"""Persistence contract for the relay.

Only the capabilities the pipeline needs: point lookups by hash, a timestamp
range query, a single-insert article create, atomic counter increments,
set-union updates and append-only run logs. Backends live next to this file.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from newsrelay.ingestion.article_types import FeedRecord, PublishedArticle
from newsrelay.orchestration.results import RunLog
from newsrelay.scheduling.state import GlobalScheduleState

SETTINGS_KEY = "rss_settings"

# Columns of GlobalScheduleState that update_schedule_state accepts.
SCHEDULE_FIELDS = (
    "lock_until",
    "lock_owner",
    "last_posted_at",
    "update_interval_minutes",
    "start_time",
    "last_reset_date",
    "posts_today",
    "consecutive_failed_runs",
    "last_run_at",
    "avg_minutes_between_posts",
)


class StoreError(Exception):
    """Raised when the backing store cannot serve a request."""
    pass


class ArticleStore(ABC):

    # -- articles --------------------------------------------------------

    @abstractmethod
    def find_article_id_by_url_hash(self, url_hash: str) -> Optional[str]:
        ...

    @abstractmethod
    def find_article_id_by_content_hash(self, content_hash: str) -> Optional[str]:
        ...

    @abstractmethod
    def recent_summaries(self, since: datetime) -> List[Tuple[str, str]]:
        """(article_id, summary) for articles published at or after *since*."""

    @abstractmethod
    def create_article(self, article: PublishedArticle) -> None:
        """Insert the full record, dedup hashes included, in one write."""

    @abstractmethod
    def upsert_category(self, name: str) -> None:
        """Create the category if absent, otherwise bump its article count."""

    # -- schedule state --------------------------------------------------

    @abstractmethod
    def load_schedule_state(self) -> GlobalScheduleState:
        ...

    @abstractmethod
    def update_schedule_state(self, **fields) -> None:
        ...

    @abstractmethod
    def record_post(self, posted_at: datetime) -> None:
        """Atomically bump ``posts_today`` and stamp ``last_posted_at``."""

    @abstractmethod
    def add_disabled_sources(self, source_ids: Iterable[str]) -> None:
        ...

    @abstractmethod
    def clear_disabled_sources(self) -> None:
        ...

    @abstractmethod
    def increment_trigger_count(self) -> None:
        ...

    # -- feeds -----------------------------------------------------------

    @abstractmethod
    def list_feeds(self, *, enabled_only: bool = True) -> List[FeedRecord]:
        ...

    @abstractmethod
    def upsert_feed(self, feed: FeedRecord) -> None:
        ...

    @abstractmethod
    def mark_feed_success(self, feed_id: str, succeeded_at: datetime, cooldown_until: datetime) -> None:
        ...

    # -- run logs --------------------------------------------------------

    @abstractmethod
    def append_run_log(self, log: RunLog) -> None:
        ...

    @abstractmethod
    def recent_run_logs(self, limit: int = 20) -> List[RunLog]:
        ...


_SLUG_RE = re.compile(r"[^\w]+", re.UNICODE)


def category_slug(name: str) -> str:
    return _SLUG_RE.sub("-", (name or "").strip().lower()).strip("-")


def check_schedule_fields(fields: dict) -> None:
    unknown = set(fields) - set(SCHEDULE_FIELDS)
    if unknown:
        raise ValueError(f"unknown schedule fields: {sorted(unknown)}")
