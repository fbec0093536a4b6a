"""Wiring: build the store, the source chain, the orchestrator and the gate."""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import partial
from typing import Optional

from newsrelay.config import RelayConfig
from newsrelay.extraction.fulltext import fetch_full_article
from newsrelay.ingestion.dedup import DedupEngine
from newsrelay.ingestion.sources import default_source_chain
from newsrelay.notifications import WebhookNotifier
from newsrelay.orchestration.orchestrator import Orchestrator
from newsrelay.orchestration.results import RunResult
from newsrelay.scheduling.gate import SchedulingGate
from newsrelay.scheduling.lease import TimestampLease
from newsrelay.storage.base import ArticleStore
from newsrelay.summaries import SummaryRequester

logger = logging.getLogger(__name__)


def build_store(config: RelayConfig) -> ArticleStore:
    if config.store_backend == "sqlite":
        from newsrelay.storage.sqlite_store import SqliteStore

        return SqliteStore(config.sqlite_path)

    from newsrelay.storage.postgres_schema import ensure_postgres_schema
    from newsrelay.storage.postgres_store import PostgresStore

    ensure_postgres_schema(config.pg_dsn)
    return PostgresStore(config.pg_dsn)


def build_gate(config: RelayConfig, store: Optional[ArticleStore] = None) -> SchedulingGate:
    store = store or build_store(config)
    orchestrator = Orchestrator(
        store,
        default_source_chain(config, store),
        dedup=DedupEngine(
            store,
            semantic_threshold=config.semantic_threshold,
            semantic_window_hours=config.semantic_window_hours,
        ),
        fetch_article=partial(fetch_full_article, timeout=config.http_timeout),
        notify=WebhookNotifier(config.notify_webhook_url, timeout=config.http_timeout).notify,
        request_summary=SummaryRequester(config.summary_webhook_url, timeout=config.http_timeout).request_summary_async,
        budget_seconds=config.run_budget_seconds,
        min_body_chars=config.min_body_chars,
        default_feed_cooldown=config.default_feed_cooldown,
    )
    return SchedulingGate(
        store,
        orchestrator,
        lease=TimestampLease(ttl=timedelta(minutes=config.lock_ttl_minutes)),
        tz_name=config.timezone,
    )


def run_now(
    force: bool = False,
    dry_run: bool = False,
    *,
    config: Optional[RelayConfig] = None,
    gate: Optional[SchedulingGate] = None,
) -> RunResult:
    """Single trigger entry point shared by the worker and the HTTP endpoint."""
    if gate is None:
        gate = build_gate(config or RelayConfig.from_env())
    return gate.run(force=force, dry_run=dry_run)
