"""SQLite-backed article store for single-host deployments and tests."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from newsrelay.ingestion.article_types import FeedRecord, PublishedArticle
from newsrelay.orchestration.results import RunLog
from newsrelay.scheduling.state import GlobalScheduleState, frozen_ids
from newsrelay.storage.base import (
    SETTINGS_KEY,
    ArticleStore,
    StoreError,
    category_slug,
    check_schedule_fields,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS articles (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  summary TEXT NOT NULL DEFAULT '',
  content TEXT NOT NULL DEFAULT '',
  image TEXT NOT NULL DEFAULT '',
  source_url TEXT NOT NULL,
  normalized_url TEXT NOT NULL,
  normalized_url_hash TEXT NOT NULL UNIQUE,
  content_hash TEXT,
  source_name TEXT,
  category TEXT,
  published_at TEXT NOT NULL,
  created_at TEXT NOT NULL,
  summary_status TEXT NOT NULL DEFAULT 'pending'
);
CREATE INDEX IF NOT EXISTS idx_articles_content_hash ON articles (content_hash);
CREATE INDEX IF NOT EXISTS idx_articles_published_at ON articles (published_at);

CREATE TABLE IF NOT EXISTS schedule_state (
  id TEXT PRIMARY KEY,
  lock_until TEXT,
  lock_owner TEXT,
  last_posted_at TEXT,
  update_interval_minutes INTEGER NOT NULL DEFAULT 60,
  start_time TEXT NOT NULL DEFAULT '06:00',
  last_reset_date TEXT,
  posts_today INTEGER NOT NULL DEFAULT 0,
  disabled_sources TEXT NOT NULL DEFAULT '[]',
  consecutive_failed_runs INTEGER NOT NULL DEFAULT 0,
  last_run_at TEXT,
  avg_minutes_between_posts REAL,
  trigger_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS feeds (
  id TEXT PRIMARY KEY,
  url TEXT NOT NULL,
  name TEXT NOT NULL DEFAULT '',
  enabled INTEGER NOT NULL DEFAULT 1,
  cooldown_until TEXT,
  cooldown_minutes INTEGER NOT NULL DEFAULT 30,
  last_success_at TEXT,
  failure_count INTEGER NOT NULL DEFAULT 0,
  category TEXT
);

CREATE TABLE IF NOT EXISTS categories (
  name TEXT PRIMARY KEY,
  slug TEXT NOT NULL,
  article_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS run_logs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL,
  started_at TEXT NOT NULL,
  duration_ms INTEGER NOT NULL,
  success INTEGER NOT NULL,
  exit_reason TEXT NOT NULL,
  source_used TEXT,
  posted_article_id TEXT,
  run_type TEXT NOT NULL DEFAULT 'live',
  tried_sources TEXT NOT NULL DEFAULT '[]',
  detail TEXT
);
CREATE INDEX IF NOT EXISTS idx_run_logs_started_at ON run_logs (started_at);
"""


def _to_db(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _utc_text(value: datetime) -> str:
    # Fixed-width UTC text so string comparison follows time order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SqliteStore(ArticleStore):
    def __init__(
        self,
        db_path: str,
        settings_key: str = SETTINGS_KEY,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ):
        self.db_path = db_path
        self.settings_key = settings_key
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.init_schema()

    def _open(self) -> sqlite3.Connection:
        for attempt in range(self.max_retries):
            try:
                conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                return conn
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < self.max_retries - 1:
                    logger.warning(f"Database locked, retrying in {self.retry_delay}s (attempt {attempt + 1})")
                    time.sleep(self.retry_delay)
                    continue
                raise StoreError(f"Database connection failed: {e}") from e
        raise StoreError("Database connection failed")

    @contextmanager
    def get_connection(self):
        """Autocommit connection for reads and single statements."""
        conn = self._open()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Database error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Write transaction that takes the database lock up front."""
        with self.get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def init_schema(self) -> None:
        with self.get_connection() as conn:
            conn.executescript(_SCHEMA)

    # -- articles --------------------------------------------------------

    def find_article_id_by_url_hash(self, url_hash: str) -> Optional[str]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT id FROM articles WHERE normalized_url_hash = ? LIMIT 1", (url_hash,)
            ).fetchone()
        return row["id"] if row else None

    def find_article_id_by_content_hash(self, content_hash: str) -> Optional[str]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT id FROM articles WHERE content_hash = ? LIMIT 1", (content_hash,)
            ).fetchone()
        return row["id"] if row else None

    def recent_summaries(self, since: datetime) -> List[Tuple[str, str]]:
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT id, summary FROM articles
                WHERE published_at >= ? AND summary <> ''
                ORDER BY published_at DESC
                """,
                (_utc_text(since),),
            ).fetchall()
        return [(r["id"], r["summary"]) for r in rows]

    def create_article(self, article: PublishedArticle) -> None:
        # A hash collision on the UNIQUE index surfaces as StoreError.
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO articles (
                  id, title, summary, content, image, source_url, normalized_url,
                  normalized_url_hash, content_hash, source_name, category,
                  published_at, created_at, summary_status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    article.id,
                    article.title,
                    article.summary,
                    article.content,
                    article.image,
                    article.source_url,
                    article.normalized_url,
                    article.normalized_url_hash,
                    article.content_hash or None,
                    article.source_name,
                    article.category,
                    _utc_text(article.published_at),
                    _utc_text(article.created_at),
                    article.summary_status,
                ),
            )

    def upsert_category(self, name: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO categories (name, slug, article_count) VALUES (?, ?, 1)
                ON CONFLICT (name) DO UPDATE SET article_count = article_count + 1
                """,
                (name, category_slug(name)),
            )

    # -- schedule state --------------------------------------------------

    def _ensure_state_row(self, conn: sqlite3.Connection) -> None:
        conn.execute("INSERT OR IGNORE INTO schedule_state (id) VALUES (?)", (self.settings_key,))

    def load_schedule_state(self) -> GlobalScheduleState:
        with self.get_connection() as conn:
            self._ensure_state_row(conn)
            row = conn.execute(
                "SELECT * FROM schedule_state WHERE id = ?", (self.settings_key,)
            ).fetchone()
        return GlobalScheduleState(
            lock_until=_from_db(row["lock_until"]),
            lock_owner=row["lock_owner"],
            last_posted_at=_from_db(row["last_posted_at"]),
            update_interval_minutes=int(row["update_interval_minutes"]),
            start_time=row["start_time"],
            last_reset_date=row["last_reset_date"],
            posts_today=int(row["posts_today"] or 0),
            disabled_sources=frozen_ids(json.loads(row["disabled_sources"] or "[]")),
            consecutive_failed_runs=int(row["consecutive_failed_runs"] or 0),
            last_run_at=_from_db(row["last_run_at"]),
            avg_minutes_between_posts=row["avg_minutes_between_posts"],
            trigger_count=int(row["trigger_count"] or 0),
        )

    def update_schedule_state(self, **fields) -> None:
        if not fields:
            return
        check_schedule_fields(fields)
        columns = ", ".join(f"{k} = ?" for k in fields)
        values = [_to_db(v) for v in fields.values()]
        with self.transaction() as conn:
            self._ensure_state_row(conn)
            conn.execute(
                f"UPDATE schedule_state SET {columns} WHERE id = ?", (*values, self.settings_key)
            )

    def record_post(self, posted_at: datetime) -> None:
        with self.transaction() as conn:
            self._ensure_state_row(conn)
            conn.execute(
                "UPDATE schedule_state SET posts_today = posts_today + 1, last_posted_at = ? WHERE id = ?",
                (posted_at.isoformat(), self.settings_key),
            )

    def add_disabled_sources(self, source_ids: Iterable[str]) -> None:
        ids = frozen_ids(source_ids)
        if not ids:
            return
        with self.transaction() as conn:
            self._ensure_state_row(conn)
            row = conn.execute(
                "SELECT disabled_sources FROM schedule_state WHERE id = ?", (self.settings_key,)
            ).fetchone()
            merged = frozen_ids(json.loads(row["disabled_sources"] or "[]")) | ids
            conn.execute(
                "UPDATE schedule_state SET disabled_sources = ? WHERE id = ?",
                (json.dumps(sorted(merged)), self.settings_key),
            )

    def clear_disabled_sources(self) -> None:
        with self.transaction() as conn:
            self._ensure_state_row(conn)
            conn.execute(
                "UPDATE schedule_state SET disabled_sources = '[]' WHERE id = ?", (self.settings_key,)
            )

    def increment_trigger_count(self) -> None:
        with self.transaction() as conn:
            self._ensure_state_row(conn)
            conn.execute(
                "UPDATE schedule_state SET trigger_count = trigger_count + 1 WHERE id = ?",
                (self.settings_key,),
            )

    # -- feeds -----------------------------------------------------------

    def list_feeds(self, *, enabled_only: bool = True) -> List[FeedRecord]:
        query = "SELECT * FROM feeds"
        if enabled_only:
            query += " WHERE enabled = 1"
        with self.get_connection() as conn:
            rows = conn.execute(query + " ORDER BY id").fetchall()
        return [
            FeedRecord(
                id=r["id"],
                url=r["url"],
                name=r["name"] or "",
                enabled=bool(r["enabled"]),
                cooldown_until=_from_db(r["cooldown_until"]),
                cooldown_minutes=int(r["cooldown_minutes"] or 30),
                last_success_at=_from_db(r["last_success_at"]),
                failure_count=int(r["failure_count"] or 0),
                category=r["category"],
            )
            for r in rows
        ]

    def upsert_feed(self, feed: FeedRecord) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO feeds (id, url, name, enabled, cooldown_until, cooldown_minutes, category)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                  url = excluded.url,
                  name = excluded.name,
                  enabled = excluded.enabled,
                  cooldown_minutes = excluded.cooldown_minutes,
                  category = COALESCE(excluded.category, feeds.category)
                """,
                (
                    feed.id,
                    feed.url,
                    feed.name,
                    1 if feed.enabled else 0,
                    _to_db(feed.cooldown_until),
                    feed.cooldown_minutes,
                    feed.category,
                ),
            )

    def mark_feed_success(self, feed_id: str, succeeded_at: datetime, cooldown_until: datetime) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE feeds SET last_success_at = ?, cooldown_until = ?, failure_count = 0 WHERE id = ?",
                (succeeded_at.isoformat(), cooldown_until.isoformat(), feed_id),
            )

    # -- run logs --------------------------------------------------------

    def append_run_log(self, log: RunLog) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO run_logs (
                  run_id, started_at, duration_ms, success, exit_reason, source_used,
                  posted_article_id, run_type, tried_sources, detail
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.run_id,
                    log.started_at.isoformat(),
                    int(log.duration_ms),
                    1 if log.success else 0,
                    log.exit_reason,
                    log.source_used,
                    log.posted_article_id,
                    log.run_type,
                    json.dumps(list(log.tried_sources)),
                    log.detail,
                ),
            )

    def recent_run_logs(self, limit: int = 20) -> List[RunLog]:
        limit = max(1, min(int(limit), 200))
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM run_logs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            RunLog(
                run_id=r["run_id"],
                started_at=_from_db(r["started_at"]),
                duration_ms=int(r["duration_ms"]),
                success=bool(r["success"]),
                exit_reason=r["exit_reason"],
                source_used=r["source_used"],
                posted_article_id=r["posted_article_id"],
                run_type=r["run_type"],
                tried_sources=json.loads(r["tried_sources"] or "[]"),
                detail=r["detail"],
            )
            for r in rows
        ]
