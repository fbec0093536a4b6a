"""Postgres schema management for the relay.

Schema creation is idempotent (CREATE IF NOT EXISTS) so every worker start
can call ``ensure_postgres_schema``.
"""

from __future__ import annotations

from typing import Iterable, Optional

import psycopg


SCHEMA_STATEMENTS: list[str] = [
    # Published articles; both dedup hashes are written with the row.
    """
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
      published_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      summary_status TEXT NOT NULL DEFAULT 'pending'
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_articles_content_hash ON articles (content_hash) WHERE content_hash IS NOT NULL;",
    "CREATE INDEX IF NOT EXISTS idx_articles_published_at ON articles (published_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_articles_summary_status ON articles (summary_status);",
    # Global schedule document (single row keyed by name)
    """
    CREATE TABLE IF NOT EXISTS schedule_state (
      id TEXT PRIMARY KEY,
      lock_until TIMESTAMPTZ,
      lock_owner TEXT,
      last_posted_at TIMESTAMPTZ,
      update_interval_minutes INTEGER NOT NULL DEFAULT 60,
      start_time TEXT NOT NULL DEFAULT '06:00',
      last_reset_date TEXT,
      posts_today INTEGER NOT NULL DEFAULT 0,
      disabled_sources TEXT[] NOT NULL DEFAULT '{}',
      consecutive_failed_runs INTEGER NOT NULL DEFAULT 0,
      last_run_at TIMESTAMPTZ,
      avg_minutes_between_posts REAL,
      trigger_count INTEGER NOT NULL DEFAULT 0,
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    # Subscribed feeds
    """
    CREATE TABLE IF NOT EXISTS feeds (
      id TEXT PRIMARY KEY,
      url TEXT NOT NULL,
      name TEXT NOT NULL DEFAULT '',
      enabled BOOLEAN NOT NULL DEFAULT TRUE,
      cooldown_until TIMESTAMPTZ,
      cooldown_minutes INTEGER NOT NULL DEFAULT 30,
      last_success_at TIMESTAMPTZ,
      failure_count INTEGER NOT NULL DEFAULT 0,
      category TEXT,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_feeds_enabled ON feeds (enabled);",
    # Category bookkeeping
    """
    CREATE TABLE IF NOT EXISTS categories (
      name TEXT PRIMARY KEY,
      slug TEXT NOT NULL,
      article_count INTEGER NOT NULL DEFAULT 0,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    # Append-only run log
    """
    CREATE TABLE IF NOT EXISTS run_logs (
      id BIGSERIAL PRIMARY KEY,
      run_id TEXT NOT NULL,
      started_at TIMESTAMPTZ NOT NULL,
      duration_ms INTEGER NOT NULL,
      success BOOLEAN NOT NULL,
      exit_reason TEXT NOT NULL,
      source_used TEXT,
      posted_article_id TEXT,
      run_type TEXT NOT NULL DEFAULT 'live',
      tried_sources TEXT[] NOT NULL DEFAULT '{}',
      detail TEXT,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_run_logs_started_at ON run_logs (started_at DESC);",
]


def ensure_postgres_schema(pg_dsn: str, *, statements: Optional[Iterable[str]] = None) -> None:
    """Ensure Postgres schema exists."""
    stmts = list(statements) if statements is not None else SCHEMA_STATEMENTS
    with psycopg.connect(pg_dsn, autocommit=True) as conn:
        with conn.cursor() as cur:
            for s in stmts:
                cur.execute(s)
