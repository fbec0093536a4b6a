"""Postgres-backed article store (psycopg + SQL, no ORM)."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

import psycopg
from psycopg import sql

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

_STATE_COLUMNS = (
    "lock_until, lock_owner, last_posted_at, update_interval_minutes, start_time, "
    "last_reset_date, posts_today, disabled_sources, consecutive_failed_runs, "
    "last_run_at, avg_minutes_between_posts, trigger_count"
)

_FEED_COLUMNS = (
    "id, url, name, enabled, cooldown_until, cooldown_minutes, last_success_at, failure_count, category"
)

_RUN_LOG_COLUMNS = (
    "run_id, started_at, duration_ms, success, exit_reason, source_used, "
    "posted_article_id, run_type, tried_sources, detail"
)


class PostgresStore(ArticleStore):
    def __init__(self, pg_dsn: str, settings_key: str = SETTINGS_KEY):
        self.pg_dsn = pg_dsn
        self.settings_key = settings_key

    def _connect(self):
        try:
            return psycopg.connect(self.pg_dsn, autocommit=True)
        except psycopg.OperationalError as e:
            raise StoreError(f"Postgres connection failed: {e}") from e

    @contextmanager
    def cursor(self):
        """Autocommit cursor; driver errors surface as StoreError."""
        with self._connect() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
            except psycopg.IntegrityError as e:
                raise StoreError(f"Postgres constraint violated: {e}") from e
            except psycopg.Error as e:
                raise StoreError(f"Postgres error: {e}") from e

    def _fetchone(self, query, params=()) -> Optional[tuple]:
        with self.cursor() as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def _execute(self, query, params=()) -> None:
        with self.cursor() as cur:
            cur.execute(query, params)

    # -- articles --------------------------------------------------------

    def find_article_id_by_url_hash(self, url_hash: str) -> Optional[str]:
        row = self._fetchone(
            "SELECT id FROM articles WHERE normalized_url_hash = %s LIMIT 1", (url_hash,)
        )
        return row[0] if row else None

    def find_article_id_by_content_hash(self, content_hash: str) -> Optional[str]:
        row = self._fetchone(
            "SELECT id FROM articles WHERE content_hash = %s LIMIT 1", (content_hash,)
        )
        return row[0] if row else None

    def recent_summaries(self, since: datetime) -> List[Tuple[str, str]]:
        with self.cursor() as cur:
            cur.execute(
                """
                SELECT id, summary
                FROM articles
                WHERE published_at >= %s AND summary <> ''
                ORDER BY published_at DESC
                """,
                (since,),
            )
            return [(str(aid), summary) for aid, summary in cur.fetchall()]

    def create_article(self, article: PublishedArticle) -> None:
        # A hash collision on the UNIQUE index surfaces as StoreError.
        self._execute(
            """
            INSERT INTO articles (
              id, title, summary, content, image, source_url, normalized_url,
              normalized_url_hash, content_hash, source_name, category,
              published_at, created_at, summary_status
            )
            VALUES (
              %(id)s, %(title)s, %(summary)s, %(content)s, %(image)s, %(source_url)s, %(normalized_url)s,
              %(normalized_url_hash)s, %(content_hash)s, %(source_name)s, %(category)s,
              %(published_at)s, %(created_at)s, %(summary_status)s
            )
            """,
            {
                "id": article.id,
                "title": article.title,
                "summary": article.summary,
                "content": article.content,
                "image": article.image,
                "source_url": article.source_url,
                "normalized_url": article.normalized_url,
                "normalized_url_hash": article.normalized_url_hash,
                "content_hash": article.content_hash or None,
                "source_name": article.source_name,
                "category": article.category,
                "published_at": article.published_at,
                "created_at": article.created_at,
                "summary_status": article.summary_status,
            },
        )

    def upsert_category(self, name: str) -> None:
        self._execute(
            """
            INSERT INTO categories (name, slug, article_count)
            VALUES (%s, %s, 1)
            ON CONFLICT (name) DO UPDATE SET
              article_count = categories.article_count + 1,
              updated_at = now()
            """,
            (name, category_slug(name)),
        )

    # -- schedule state --------------------------------------------------

    def _ensure_state_row(self, cur) -> None:
        cur.execute(
            "INSERT INTO schedule_state (id) VALUES (%s) ON CONFLICT (id) DO NOTHING",
            (self.settings_key,),
        )

    def load_schedule_state(self) -> GlobalScheduleState:
        with self.cursor() as cur:
            self._ensure_state_row(cur)
            cur.execute(
                f"SELECT {_STATE_COLUMNS} FROM schedule_state WHERE id = %s",
                (self.settings_key,),
            )
            row = cur.fetchone()
        (
            lock_until,
            lock_owner,
            last_posted_at,
            interval,
            start_time,
            last_reset_date,
            posts_today,
            disabled,
            failed_runs,
            last_run_at,
            avg_minutes,
            trigger_count,
        ) = row
        return GlobalScheduleState(
            lock_until=lock_until,
            lock_owner=lock_owner,
            last_posted_at=last_posted_at,
            update_interval_minutes=int(interval),
            start_time=start_time,
            last_reset_date=last_reset_date,
            posts_today=int(posts_today or 0),
            disabled_sources=frozen_ids(disabled),
            consecutive_failed_runs=int(failed_runs or 0),
            last_run_at=last_run_at,
            avg_minutes_between_posts=avg_minutes,
            trigger_count=int(trigger_count or 0),
        )

    def update_schedule_state(self, **fields) -> None:
        if not fields:
            return
        check_schedule_fields(fields)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(k), sql.Placeholder(k)) for k in fields
        )
        query = sql.SQL("UPDATE schedule_state SET {}, updated_at = now() WHERE id = {}").format(
            assignments, sql.Placeholder("_key")
        )
        with self.cursor() as cur:
            self._ensure_state_row(cur)
            cur.execute(query, {**fields, "_key": self.settings_key})

    def record_post(self, posted_at: datetime) -> None:
        self._execute(
            """
            UPDATE schedule_state
            SET posts_today = posts_today + 1, last_posted_at = %s, updated_at = now()
            WHERE id = %s
            """,
            (posted_at, self.settings_key),
        )

    def add_disabled_sources(self, source_ids: Iterable[str]) -> None:
        ids = sorted(frozen_ids(source_ids))
        if not ids:
            return
        self._execute(
            """
            UPDATE schedule_state
            SET disabled_sources = ARRAY(
                  SELECT DISTINCT unnest(disabled_sources || %s::text[])
                ),
                updated_at = now()
            WHERE id = %s
            """,
            (ids, self.settings_key),
        )

    def clear_disabled_sources(self) -> None:
        self._execute(
            "UPDATE schedule_state SET disabled_sources = '{}', updated_at = now() WHERE id = %s",
            (self.settings_key,),
        )

    def increment_trigger_count(self) -> None:
        with self.cursor() as cur:
            self._ensure_state_row(cur)
            cur.execute(
                "UPDATE schedule_state SET trigger_count = trigger_count + 1 WHERE id = %s",
                (self.settings_key,),
            )

    # -- feeds -----------------------------------------------------------

    def list_feeds(self, *, enabled_only: bool = True) -> List[FeedRecord]:
        where = "WHERE enabled" if enabled_only else ""
        with self.cursor() as cur:
            cur.execute(f"SELECT {_FEED_COLUMNS} FROM feeds {where} ORDER BY id")
            rows = cur.fetchall()
        return [
            FeedRecord(
                id=str(fid),
                url=url,
                name=name or "",
                enabled=bool(enabled),
                cooldown_until=cooldown_until,
                cooldown_minutes=int(cooldown_minutes or 30),
                last_success_at=last_success_at,
                failure_count=int(failure_count or 0),
                category=category,
            )
            for (
                fid,
                url,
                name,
                enabled,
                cooldown_until,
                cooldown_minutes,
                last_success_at,
                failure_count,
                category,
            ) in rows
        ]

    def upsert_feed(self, feed: FeedRecord) -> None:
        self._execute(
            """
            INSERT INTO feeds (id, url, name, enabled, cooldown_minutes, category)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
              url = EXCLUDED.url,
              name = EXCLUDED.name,
              enabled = EXCLUDED.enabled,
              cooldown_minutes = EXCLUDED.cooldown_minutes,
              category = COALESCE(EXCLUDED.category, feeds.category)
            """,
            (feed.id, feed.url, feed.name, feed.enabled, feed.cooldown_minutes, feed.category),
        )

    def mark_feed_success(self, feed_id: str, succeeded_at: datetime, cooldown_until: datetime) -> None:
        self._execute(
            """
            UPDATE feeds
            SET last_success_at = %s, cooldown_until = %s, failure_count = 0
            WHERE id = %s
            """,
            (succeeded_at, cooldown_until, feed_id),
        )

    # -- run logs --------------------------------------------------------

    def append_run_log(self, log: RunLog) -> None:
        self._execute(
            f"""
            INSERT INTO run_logs ({_RUN_LOG_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                log.run_id,
                log.started_at,
                int(log.duration_ms),
                log.success,
                log.exit_reason,
                log.source_used,
                log.posted_article_id,
                log.run_type,
                list(log.tried_sources),
                log.detail,
            ),
        )

    def recent_run_logs(self, limit: int = 20) -> List[RunLog]:
        limit = max(1, min(int(limit), 200))
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {_RUN_LOG_COLUMNS} FROM run_logs ORDER BY started_at DESC, id DESC LIMIT %s",
                (limit,),
            )
            rows = cur.fetchall()
        return [
            RunLog(
                run_id=run_id,
                started_at=started_at,
                duration_ms=int(duration_ms),
                success=bool(success),
                exit_reason=exit_reason,
                source_used=source_used,
                posted_article_id=posted_article_id,
                run_type=run_type,
                tried_sources=list(tried or []),
                detail=detail,
            )
            for (
                run_id,
                started_at,
                duration_ms,
                success,
                exit_reason,
                source_used,
                posted_article_id,
                run_type,
                tried,
                detail,
            ) in rows
        ]
