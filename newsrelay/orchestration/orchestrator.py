"""Acquisition orchestrator: one candidate per invocation.

SELECT_SOURCE -> FETCH_CANDIDATE -> URL_DEDUP -> CONTENT_BACKFILL ->
CONTENT_DEDUP -> PUBLISH -> RESET_CHAIN

A source that yields nothing new (empty, error, duplicate, unreadable body)
goes into the disabled-set and is skipped on the next invocation; it is never
retried inside the same one. The schedule state comes in as a value and the
updated value is returned for the gate to persist.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

from newsrelay.extraction.fulltext import FullArticleResult, fetch_full_article
from newsrelay.ingestion.article_types import Candidate, PublishedArticle
from newsrelay.ingestion.dedup import DedupEngine, DuplicateResult, content_hash
from newsrelay.ingestion.sources import SourceEntry, SourceError
from newsrelay.ingestion.url_utils import normalize_url, url_hash
from newsrelay.orchestration.results import CIRCUIT_BREAKING, ExitReason, RunLog, RunResult
from newsrelay.scheduling.state import GlobalScheduleState
from newsrelay.storage.base import ArticleStore, StoreError

logger = logging.getLogger(__name__)

RUN_BUDGET_SECONDS = 45.0
MIN_BODY_CHARS = 200
DEFAULT_FEED_COOLDOWN_MINUTES = 30
DEFAULT_CATEGORY = "General"
EXCERPT_CHARS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _plain_text(candidate: Candidate) -> str:
    if candidate.text_content:
        return candidate.text_content.strip()
    if candidate.content:
        return BeautifulSoup(candidate.content, "html.parser").get_text("\n", strip=True)
    return ""


def _excerpt(text: str, limit: int = EXCERPT_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(" ", 1)[0]
    return cut + "..."


@dataclass
class _Run:
    run_id: str
    started_at: datetime
    started: float
    dry_run: bool
    tried: List[str] = field(default_factory=list)


class Orchestrator:
    def __init__(
        self,
        store: ArticleStore,
        sources: Sequence[SourceEntry],
        *,
        dedup: Optional[DedupEngine] = None,
        fetch_article: Callable[[str], FullArticleResult] = fetch_full_article,
        notify: Optional[Callable[[str, str, str], bool]] = None,
        request_summary: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        budget_seconds: float = RUN_BUDGET_SECONDS,
        min_body_chars: int = MIN_BODY_CHARS,
        default_feed_cooldown: int = DEFAULT_FEED_COOLDOWN_MINUTES,
        id_factory: Callable[[], str] = _new_id,
    ):
        self.store = store
        self.sources = sorted(sources, key=lambda s: s.priority)
        self.dedup = dedup or DedupEngine(store)
        self.fetch_article = fetch_article
        self.notify = notify
        self.request_summary = request_summary
        self.clock = clock
        self.monotonic = monotonic
        self.budget_seconds = budget_seconds
        self.min_body_chars = min_body_chars
        self.default_feed_cooldown = default_feed_cooldown
        self.id_factory = id_factory

    # -- helpers ---------------------------------------------------------

    def _elapsed_ms(self, run: _Run) -> int:
        return int((self.monotonic() - run.started) * 1000)

    def _over_budget(self, run: _Run) -> bool:
        return self.monotonic() - run.started > self.budget_seconds

    def _finish(
        self,
        run: _Run,
        state: GlobalScheduleState,
        reason: ExitReason,
        *,
        source: Optional[SourceEntry] = None,
        article_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> Tuple[RunResult, GlobalScheduleState]:
        success = reason == ExitReason.SUCCESS
        result = RunResult(
            success=success,
            exit_reason=reason,
            duration_ms=self._elapsed_ms(run),
            source_used=source.id if source else None,
            posted_article_id=article_id,
            run_id=run.run_id,
        )
        if not run.dry_run:
            self.store.append_run_log(
                RunLog(
                    run_id=run.run_id,
                    started_at=run.started_at,
                    duration_ms=result.duration_ms,
                    success=success,
                    exit_reason=reason.value,
                    source_used=result.source_used,
                    posted_article_id=article_id,
                    run_type="live",
                    tried_sources=list(run.tried),
                    detail=detail,
                )
            )
        mode = "DRY" if run.dry_run else "LIVE"
        logger.info(
            f"[Orchestrator] Run {run.run_id} finished [{mode}] "
            f"success={success} reason={reason.value} source={result.source_used} "
            f"duration={result.duration_ms}ms"
        )
        return result, state

    def _disable(
        self,
        run: _Run,
        state: GlobalScheduleState,
        entry: SourceEntry,
        reason: ExitReason,
        detail: Optional[str] = None,
    ) -> Tuple[RunResult, GlobalScheduleState]:
        if reason not in CIRCUIT_BREAKING:
            raise ValueError(f"{reason.value} does not disable a source")
        logger.info(f"[Orchestrator] Disabling {entry.id} for the next run ({reason.value})")
        return self._finish(run, state.with_disabled(entry.id), reason, source=entry, detail=detail)

    def select_source(self, state: GlobalScheduleState) -> Tuple[Optional[SourceEntry], GlobalScheduleState]:
        enabled = [s for s in self.sources if s.enabled]
        available = [s for s in enabled if not state.is_disabled(s.id)]
        if not available and enabled:
            logger.info(
                f"[Orchestrator] Every enabled source is disabled "
                f"({sorted(state.disabled_sources)}); resetting the chain"
            )
            state = state.with_cleared_disabled()
            available = list(enabled)
        return (available[0] if available else None), state

    # -- state machine ---------------------------------------------------

    def run(
        self,
        state: GlobalScheduleState,
        force: bool = False,
        dry_run: bool = False,
        *,
        run_id: Optional[str] = None,
        started: Optional[float] = None,
    ) -> Tuple[RunResult, GlobalScheduleState]:
        """Drive one candidate through the chain.

        ``started`` is a ``monotonic()`` reading; the gate passes its own so
        the wall-clock budget covers the whole invocation.
        """
        run = _Run(
            run_id=run_id or _new_id(),
            started_at=self.clock(),
            started=self.monotonic() if started is None else started,
            dry_run=dry_run,
        )
        logger.info(f"[Orchestrator] Run {run.run_id} started (force={force}, dry_run={dry_run})")

        entry, state = self.select_source(state)
        if entry is None:
            logger.warning("[Orchestrator] No enabled sources configured")
            return self._finish(run, state, ExitReason.NO_SOURCES_AVAILABLE)

        if self._over_budget(run):
            return self._finish(run, state, ExitReason.GLOBAL_TIMEOUT, source=entry)

        run.tried.append(entry.id)
        logger.info(f"[Orchestrator] Trying source {entry.id} (priority {entry.priority})")
        try:
            candidate = entry.adapter.fetch_candidate()
        except StoreError:
            raise
        except SourceError as e:
            logger.warning(f"[Orchestrator] Source {entry.id} failed: {e}")
            return self._disable(run, state, entry, ExitReason.SOURCE_ERROR, detail=str(e))
        except Exception as e:
            logger.exception(f"[Orchestrator] Source {entry.id} raised unexpectedly")
            return self._disable(run, state, entry, ExitReason.SOURCE_ERROR, detail=repr(e))
        if candidate is None:
            return self._disable(run, state, entry, ExitReason.SOURCE_EMPTY)

        clean_url = candidate.clean_url or normalize_url(candidate.source_url)
        dup = self.dedup.check_url(clean_url)
        if dup.is_duplicate:
            logger.info(f"[Orchestrator] URL duplicate of {dup.original_id}: {clean_url}")
            return self._disable(run, state, entry, ExitReason.DUPLICATE_URL, detail=_dup_detail(dup))

        if self._over_budget(run):
            return self._finish(run, state, ExitReason.GLOBAL_TIMEOUT, source=entry)

        candidate, error = self._backfill(candidate)
        if error:
            logger.info(f"[Orchestrator] Content fetch failed for {candidate.source_url}: {error}")
            return self._disable(run, state, entry, ExitReason.CONTENT_FETCH_FAILED, detail=error)

        text = _plain_text(candidate)
        dup = self.dedup.check_content(text)
        if not dup.is_duplicate and candidate.summary:
            dup = self.dedup.check_semantic(candidate.summary, now=self.clock())
        if dup.is_duplicate:
            logger.info(f"[Orchestrator] Content duplicate ({dup.type}) of {dup.original_id}")
            return self._disable(run, state, entry, ExitReason.DUPLICATE_CONTENT, detail=_dup_detail(dup))

        if dry_run:
            article_id = f"dry-run-{run.run_id}"
            logger.info(f"[Orchestrator] [DRY RUN] Would publish: {candidate.title[:80]}")
            return self._finish(run, state, ExitReason.SUCCESS, source=entry, article_id=article_id)

        article, state = self._publish(candidate, clean_url, text, state)
        return self._finish(run, state, ExitReason.SUCCESS, source=entry, article_id=article.id)

    def _backfill(self, candidate: Candidate) -> Tuple[Candidate, Optional[str]]:
        if len(_plain_text(candidate)) >= self.min_body_chars:
            return candidate, None
        try:
            res = self.fetch_article(candidate.source_url)
        except Exception as e:
            logger.exception(f"[Orchestrator] Full article fetch raised for {candidate.source_url}")
            return candidate, repr(e)
        if not res.success or not (res.text_content or "").strip():
            return candidate, res.error or "empty_content"
        candidate = replace(
            candidate,
            content=res.content,
            text_content=res.text_content,
            title=candidate.title or (res.title or ""),
            image=candidate.image or res.image,
            category=candidate.category or res.category,
        )
        if not candidate.title.strip():
            return candidate, "missing_title"
        return candidate, None

    def _publish(
        self,
        candidate: Candidate,
        clean_url: str,
        text: str,
        state: GlobalScheduleState,
    ) -> Tuple[PublishedArticle, GlobalScheduleState]:
        now = self.clock()
        summary = candidate.summary or _excerpt(text)
        article = PublishedArticle(
            id=self.id_factory(),
            title=candidate.title.strip(),
            summary=summary,
            content=candidate.content or "",
            image=candidate.image or "",
            source_url=candidate.source_url,
            normalized_url=clean_url,
            normalized_url_hash=url_hash(clean_url),
            content_hash=content_hash(text),
            source_name=candidate.source_name,
            category=candidate.category or DEFAULT_CATEGORY,
            published_at=now,
            created_at=now,
            summary_status="pending",
        )
        self.store.create_article(article)
        self.store.upsert_category(article.category)
        logger.info(f"[Orchestrator] Published {article.id}: {article.title[:80]}")

        if self.notify is not None:
            try:
                sent = self.notify(article.title, summary, article.id)
            except Exception:
                logger.exception("[Orchestrator] Notification raised")
                sent = False
            if not sent:
                logger.warning(f"[Orchestrator] Notification not delivered for {article.id}")
        if self.request_summary is not None:
            self.request_summary(article.id, text)

        if candidate.feed_id:
            cooldown = candidate.cooldown_minutes or self.default_feed_cooldown
            self.store.mark_feed_success(candidate.feed_id, now, now + timedelta(minutes=cooldown))

        state = replace(
            state.with_cleared_disabled(),
            posts_today=state.posts_today + 1,
            last_posted_at=now,
        )
        return article, state


def _dup_detail(dup: DuplicateResult) -> str:
    return f"{dup.type}:{dup.original_id}:{dup.confidence:.3f}"
