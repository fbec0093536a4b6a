"""Shared ingestion data types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Candidate:
    """In-flight article proposal produced by a source adapter.

    Adapters fill what is cheap (title/link, feed description); the body is
    backfilled later by the orchestrator with ``dataclasses.replace``.
    """

    title: str
    source_url: str
    clean_url: str
    source_name: str
    summary: Optional[str] = None
    content: Optional[str] = None
    text_content: Optional[str] = None
    image: Optional[str] = None
    published_at: Optional[str] = None
    category: Optional[str] = None
    feed_id: Optional[str] = None
    cooldown_minutes: Optional[int] = None


@dataclass(frozen=True)
class PublishedArticle:
    id: str
    title: str
    summary: str
    content: str
    image: str
    source_url: str
    normalized_url: str
    normalized_url_hash: str
    content_hash: str
    source_name: str
    category: str
    published_at: datetime
    created_at: datetime
    summary_status: str = "pending"


@dataclass(frozen=True)
class FeedRecord:
    """Subscribed feed row. Only the feed adapter and the publish step touch it."""

    id: str
    url: str
    name: str = ""
    enabled: bool = True
    cooldown_until: Optional[datetime] = None
    cooldown_minutes: int = 30
    last_success_at: Optional[datetime] = None
    failure_count: int = 0
    category: Optional[str] = None

    def is_eligible(self, now: datetime) -> bool:
        if not self.enabled or not self.url:
            return False
        return self.cooldown_until is None or self.cooldown_until <= now
