import os
import tempfile
import unittest
from datetime import datetime, timezone
from unittest import mock

from cron_api import create_app
from newsrelay.config import RelayConfig
from newsrelay.orchestration.results import ExitReason, RunLog, RunResult
from newsrelay.storage.sqlite_store import SqliteStore


class CronApiTestCase(unittest.TestCase):
    secret = None

    def setUp(self):
        fd, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.store = SqliteStore(self.db_path)
        self.gate = mock.Mock()
        self.gate.run.return_value = RunResult(
            success=True,
            exit_reason=ExitReason.SUCCESS,
            duration_ms=120,
            source_used="rss",
            posted_article_id="abc",
            run_id="r1",
        )
        config = RelayConfig(store_backend="sqlite", sqlite_path=self.db_path, cron_secret=self.secret)
        self.client = create_app(config=config, store=self.store, gate=self.gate).test_client()

    def tearDown(self):
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(self.db_path + suffix):
                os.remove(self.db_path + suffix)


class TestCronTrigger(CronApiTestCase):
    def test_runs_gate_and_reports_result(self):
        resp = self.client.get("/api/cron/rss?force=true")
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertEqual(data["exit_reason"], "success")
        self.assertEqual(data["posted_article_id"], "abc")
        self.assertFalse(data["skipped"])
        self.assertTrue(data["force"])
        self.gate.run.assert_called_once_with(force=True, dry_run=False)

    def test_dry_flag(self):
        self.client.get("/api/cron/rss?dry=true")
        self.gate.run.assert_called_once_with(force=False, dry_run=True)

    def test_skip_is_not_an_error(self):
        self.gate.run.return_value = RunResult(
            success=False, exit_reason=ExitReason.GLOBAL_COOLDOWN, duration_ms=3, run_id="r2"
        )
        resp = self.client.get("/api/cron/rss")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.get_json()["skipped"])

    def test_gate_failure_returns_500(self):
        self.gate.run.side_effect = RuntimeError("store down")
        resp = self.client.get("/api/cron/rss")
        self.assertEqual(resp.status_code, 500)
        data = resp.get_json()
        self.assertEqual((data["success"], data["exit_reason"]), (False, "error"))

    def test_counts_cron_job_org_triggers(self):
        self.client.get("/api/cron/rss", headers={"User-Agent": "Mozilla/5.0 (compatible; cron-job.org)"})
        self.client.get("/api/cron/rss", headers={"User-Agent": "curl/8.0"})
        self.assertEqual(self.store.load_schedule_state().trigger_count, 1)

    def test_runs_and_status(self):
        self.store.append_run_log(
            RunLog(
                run_id="r9",
                started_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
                duration_ms=5,
                success=False,
                exit_reason="source_empty",
                source_used="rss",
                tried_sources=["rss"],
            )
        )
        self.store.add_disabled_sources(["rss"])
        runs = self.client.get("/api/cron/runs?limit=abc").get_json()["runs"]
        self.assertEqual([r["run_id"] for r in runs], ["r9"])
        self.assertEqual(runs[0]["tried_sources"], ["rss"])
        status = self.client.get("/api/cron/status").get_json()
        self.assertEqual(status["disabled_sources"], ["rss"])
        self.assertFalse(status["lock_active"])


class TestCronSecret(CronApiTestCase):
    secret = "s3cret"

    def test_missing_or_wrong_token(self):
        self.assertEqual(self.client.get("/api/cron/rss").status_code, 401)
        resp = self.client.get("/api/cron/rss", headers={"Authorization": "Bearer nope"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.client.get("/api/cron/runs").status_code, 401)
        self.gate.run.assert_not_called()

    def test_valid_token(self):
        resp = self.client.get("/api/cron/rss", headers={"Authorization": "Bearer s3cret"})
        self.assertEqual(resp.status_code, 200)
        self.gate.run.assert_called_once()

    def test_key_query_parameter(self):
        self.assertEqual(self.client.get("/api/cron/rss?key=s3cret").status_code, 200)
        self.assertEqual(self.client.get("/api/cron/status?key=nope").status_code, 401)
        self.assertEqual(self.client.get("/api/cron/runs?key=s3cret").status_code, 200)
        self.gate.run.assert_called_once()

    def test_trigger_is_counted_before_auth(self):
        self.client.get("/api/cron/rss", headers={"User-Agent": "cron-job.org/1.0"})
        self.assertEqual(self.store.load_schedule_state().trigger_count, 1)


if __name__ == "__main__":
    unittest.main()
