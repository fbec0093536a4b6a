import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from newsrelay.extraction.fulltext import FullArticleResult
from newsrelay.ingestion.article_types import Candidate, FeedRecord, PublishedArticle
from newsrelay.ingestion.dedup import content_hash
from newsrelay.ingestion.sources import BaseSource, SourceEntry, SourceError, SourceKind
from newsrelay.ingestion.url_utils import normalize_url, url_hash
from newsrelay.orchestration.orchestrator import Orchestrator, _Run
from newsrelay.orchestration.results import CIRCUIT_BREAKING, ExitReason
from newsrelay.scheduling.state import GlobalScheduleState
from newsrelay.storage.sqlite_store import SqliteStore


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
LONG_TEXT = " ".join(f"word{i}" for i in range(60))
SUMMARY = "The central bank raised its policy rate by half a point on Thursday to curb rising inflation."


class StubSource(BaseSource):
    kind = SourceKind.DIRECT_SITE

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = 0

    def fetch_candidate(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


def _cand(url, text=LONG_TEXT, **kwargs):
    fields = dict(
        title="A headline about something",
        source_url=url,
        clean_url=normalize_url(url),
        source_name="Stub",
        text_content=text,
        content=f"<p>{text}</p>" if text else None,
    )
    fields.update(kwargs)
    return Candidate(**fields)


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        fd, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.store = SqliteStore(self.db_path)
        self.fetch_article = mock.Mock(return_value=FullArticleResult(success=False, error="unused"))
        self.notify = mock.Mock(return_value=True)
        self.request_summary = mock.Mock()
        self.ticks = [0.0]

    def tearDown(self):
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(self.db_path + suffix):
                os.remove(self.db_path + suffix)

    def orchestrator(self, *entries, **kwargs):
        return Orchestrator(
            self.store,
            list(entries),
            fetch_article=self.fetch_article,
            notify=self.notify,
            request_summary=self.request_summary,
            clock=lambda: NOW,
            monotonic=lambda: self.ticks[0],
            **kwargs,
        )

    def count_articles(self):
        with self.store.get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM articles").fetchone()[0]


class TestPublishAndDedup(OrchestratorTestCase):
    def test_duplicate_url_on_second_run(self):
        source = StubSource(_cand("https://n.com/a"))
        orch = self.orchestrator(SourceEntry("s1", "Stub", 1, source))

        first, state = orch.run(GlobalScheduleState())
        self.assertTrue(first.success)
        self.assertEqual(first.exit_reason, ExitReason.SUCCESS)
        self.assertEqual(first.source_used, "s1")
        self.assertEqual(state.posts_today, 1)
        self.assertEqual(state.last_posted_at, NOW)

        second, state = orch.run(state)
        self.assertFalse(second.success)
        self.assertEqual(second.exit_reason, ExitReason.DUPLICATE_URL)
        self.assertEqual(state.disabled_sources, frozenset({"s1"}))
        self.assertEqual(self.count_articles(), 1)

    def test_published_record_carries_both_hashes(self):
        orch = self.orchestrator(SourceEntry("s1", "Stub", 1, StubSource(_cand("https://n.com/a?utm_source=x"))))
        result, _ = orch.run(GlobalScheduleState())
        with self.store.get_connection() as conn:
            row = conn.execute("SELECT * FROM articles WHERE id = ?", (result.posted_article_id,)).fetchone()
        self.assertEqual(row["normalized_url"], "https://n.com/a")
        self.assertEqual(row["normalized_url_hash"], url_hash("https://n.com/a"))
        self.assertEqual(row["content_hash"], content_hash(LONG_TEXT))
        self.assertEqual(row["summary_status"], "pending")
        self.assertEqual(row["category"], "General")
        self.notify.assert_called_once()
        self.request_summary.assert_called_once_with(result.posted_article_id, LONG_TEXT)

    def test_duplicate_content_from_another_url(self):
        orch = self.orchestrator(SourceEntry("s1", "Stub", 1, StubSource(_cand("https://n.com/a"))))
        orch.run(GlobalScheduleState())
        orch = self.orchestrator(SourceEntry("s2", "Other", 1, StubSource(_cand("https://other.com/b"))))
        result, state = orch.run(GlobalScheduleState())
        self.assertEqual(result.exit_reason, ExitReason.DUPLICATE_CONTENT)
        self.assertIn("s2", state.disabled_sources)
        logs = self.store.recent_run_logs(1)
        self.assertTrue(logs[0].detail.startswith("content_hash:"))

    def test_semantic_duplicate_exits_as_duplicate_content(self):
        self.store.create_article(
            PublishedArticle(
                id="old",
                title="Rate decision",
                summary=SUMMARY,
                content="",
                image="",
                source_url="https://bank.example.com/x",
                normalized_url="https://bank.example.com/x",
                normalized_url_hash=url_hash("https://bank.example.com/x"),
                content_hash=content_hash("something else entirely"),
                source_name="Bank",
                category="Economy",
                published_at=NOW - timedelta(hours=3),
                created_at=NOW - timedelta(hours=3),
            )
        )
        source = StubSource(_cand("https://paper.example.com/y/z", summary=SUMMARY))
        result, _ = self.orchestrator(SourceEntry("s1", "Stub", 1, source)).run(GlobalScheduleState())
        self.assertEqual(result.exit_reason, ExitReason.DUPLICATE_CONTENT)
        self.assertTrue(self.store.recent_run_logs(1)[0].detail.startswith("semantic:old"))

    def test_success_clears_disabled_set_and_sets_feed_cooldown(self):
        self.store.upsert_feed(FeedRecord(id="f1", url="https://feed.example.com/rss", cooldown_minutes=45))
        cand = _cand("https://feed.example.com/news/1", feed_id="f1", cooldown_minutes=45, category="Politics")
        orch = self.orchestrator(
            SourceEntry("s1", "Stub", 1, StubSource(cand)),
            SourceEntry("s2", "Other", 2, StubSource(None)),
        )
        result, state = orch.run(GlobalScheduleState(disabled_sources=frozenset({"s2"})))
        self.assertTrue(result.success)
        self.assertEqual(state.disabled_sources, frozenset())
        feed = self.store.list_feeds()[0]
        self.assertEqual(feed.cooldown_until, NOW + timedelta(minutes=45))
        self.assertEqual(feed.last_success_at, NOW)
        self.assertEqual(feed.failure_count, 0)


class TestCircuitBreaker(OrchestratorTestCase):
    def test_disabled_sources_are_skipped(self):
        first = StubSource(_cand("https://a.com/x/1"))
        second = StubSource(_cand("https://b.com/x/1"))
        orch = self.orchestrator(SourceEntry("a", "A", 1, first), SourceEntry("b", "B", 2, second))
        result, _ = orch.run(GlobalScheduleState(disabled_sources=frozenset({"a"})))
        self.assertEqual(result.source_used, "b")
        self.assertEqual((first.calls, second.calls), (0, 1))

    def test_full_disabled_set_is_cleared_before_selection(self):
        first = StubSource(None)
        orch = self.orchestrator(
            SourceEntry("a", "A", 1, first),
            SourceEntry("b", "B", 2, StubSource(None)),
        )
        result, state = orch.run(GlobalScheduleState(disabled_sources=frozenset({"a", "b"})))
        self.assertEqual(first.calls, 1)
        self.assertEqual(result.exit_reason, ExitReason.SOURCE_EMPTY)
        self.assertEqual(state.disabled_sources, frozenset({"a"}))

    def test_chain_makes_progress_over_consecutive_runs(self):
        sources = [StubSource(None), StubSource(None), StubSource(None)]
        orch = self.orchestrator(*[SourceEntry(f"s{i}", f"S{i}", i, s) for i, s in enumerate(sources)])
        state = GlobalScheduleState()
        used = []
        for _ in range(4):
            result, state = orch.run(state)
            used.append(result.source_used)
        self.assertEqual(used, ["s0", "s1", "s2", "s0"])

    def test_no_enabled_sources(self):
        orch = self.orchestrator(SourceEntry("a", "A", 1, StubSource(None), enabled=False))
        result, _ = orch.run(GlobalScheduleState())
        self.assertEqual(result.exit_reason, ExitReason.NO_SOURCES_AVAILABLE)
        self.assertIsNone(result.source_used)

    def test_source_errors_are_contained(self):
        for error in (SourceError("HTTP 503"), RuntimeError("parser blew up")):
            orch = self.orchestrator(SourceEntry("a", "A", 1, StubSource(error=error)))
            result, state = orch.run(GlobalScheduleState())
            self.assertEqual(result.exit_reason, ExitReason.SOURCE_ERROR)
            self.assertEqual(state.disabled_sources, frozenset({"a"}))

    def test_only_breaking_exits_disable_a_source(self):
        entry = SourceEntry("a", "A", 1, StubSource(None))
        orch = self.orchestrator(entry)
        run = _Run(run_id="r", started_at=NOW, started=0.0, dry_run=True)
        for reason in (ExitReason.GLOBAL_TIMEOUT, ExitReason.SUCCESS, ExitReason.GLOBAL_COOLDOWN):
            with self.assertRaises(ValueError):
                orch._disable(run, GlobalScheduleState(), entry, reason)
        for reason in CIRCUIT_BREAKING:
            _, state = orch._disable(run, GlobalScheduleState(), entry, reason)
            self.assertEqual(state.disabled_sources, frozenset({"a"}))


class TestBackfill(OrchestratorTestCase):
    def test_short_body_is_backfilled(self):
        self.fetch_article.return_value = FullArticleResult(
            success=True,
            title="Fetched title",
            content=f"<p>{LONG_TEXT}</p>",
            text_content=LONG_TEXT,
            image="https://img.example.com/1.jpg",
            category="Sports",
        )
        cand = _cand("https://site.example.com/sports/1", text=None, title="")
        result, _ = self.orchestrator(SourceEntry("d", "Direct", 1, StubSource(cand))).run(GlobalScheduleState())
        self.assertTrue(result.success)
        self.fetch_article.assert_called_once_with("https://site.example.com/sports/1")
        with self.store.get_connection() as conn:
            row = conn.execute("SELECT * FROM articles").fetchone()
        self.assertEqual((row["title"], row["image"], row["category"]), ("Fetched title", "https://img.example.com/1.jpg", "Sports"))

    def test_long_body_skips_backfill(self):
        self.orchestrator(SourceEntry("s", "S", 1, StubSource(_cand("https://n.com/a/b")))).run(GlobalScheduleState())
        self.fetch_article.assert_not_called()

    def test_failed_backfill_disables_source(self):
        self.fetch_article.return_value = FullArticleResult(success=False, error="http_404")
        cand = _cand("https://site.example.com/x/1", text="too short")
        result, state = self.orchestrator(SourceEntry("d", "Direct", 1, StubSource(cand))).run(GlobalScheduleState())
        self.assertEqual(result.exit_reason, ExitReason.CONTENT_FETCH_FAILED)
        self.assertEqual(state.disabled_sources, frozenset({"d"}))
        self.assertEqual(self.store.recent_run_logs(1)[0].detail, "http_404")


class TestRunModes(OrchestratorTestCase):
    def test_dry_run_writes_nothing(self):
        source = StubSource(_cand("https://n.com/fresh"))
        result, state = self.orchestrator(SourceEntry("s", "S", 1, source)).run(
            GlobalScheduleState(), dry_run=True, run_id="r1"
        )
        self.assertTrue(result.success)
        self.assertEqual(result.posted_article_id, "dry-run-r1")
        self.assertEqual(self.count_articles(), 0)
        self.assertEqual(self.store.recent_run_logs(), [])
        self.assertEqual(state.posts_today, 0)
        self.notify.assert_not_called()
        self.request_summary.assert_not_called()

    def test_budget_exhausted_before_fetch(self):
        source = StubSource(_cand("https://n.com/a"))
        orch = self.orchestrator(SourceEntry("s", "S", 1, source), budget_seconds=45)
        self.ticks[0] = 100.0
        result, state = orch.run(GlobalScheduleState(), started=50.0)
        self.assertEqual(result.exit_reason, ExitReason.GLOBAL_TIMEOUT)
        self.assertEqual(source.calls, 0)
        self.assertEqual(state.disabled_sources, frozenset())

    def test_every_live_run_is_logged(self):
        orch = self.orchestrator(SourceEntry("s", "S", 1, StubSource(None)))
        result, _ = orch.run(GlobalScheduleState(), run_id="r2")
        logs = self.store.recent_run_logs()
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].run_id, "r2")
        self.assertEqual(logs[0].exit_reason, "source_empty")
        self.assertEqual(logs[0].tried_sources, ["s"])
        self.assertEqual(logs[0].run_type, "live")
        self.assertEqual(result.run_id, "r2")


if __name__ == "__main__":
    unittest.main()
