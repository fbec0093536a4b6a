import os
import unittest
from unittest import mock

from newsrelay.config import RelayConfig, parse_source_overrides


class TestRelayConfig(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = RelayConfig.from_env(dotenv=False)
        self.assertEqual(config.store_backend, "postgres")
        self.assertEqual(config.timezone, "Asia/Dhaka")
        self.assertEqual(config.lock_ttl_minutes, 10)
        self.assertEqual(config.run_budget_seconds, 45.0)
        self.assertIsNone(config.cron_secret)

    def test_reads_environment(self):
        env = {
            "RELAY_STORE": "SQLite",
            "RELAY_SQLITE_PATH": "/tmp/relay.db",
            "RELAY_TIMEZONE": "Europe/London",
            "RELAY_SOURCES": "rss:0, google-news-aggregator:3:false",
            "CRON_SECRET": "s3cret",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = RelayConfig.from_env(dotenv=False)
        self.assertEqual(config.store_backend, "sqlite")
        self.assertEqual(config.sqlite_path, "/tmp/relay.db")
        self.assertEqual(config.source_overrides, {"rss": (0, True), "google-news-aggregator": (3, False)})
        self.assertEqual(config.cron_secret, "s3cret")

    def test_collects_validation_errors(self):
        env = {"RELAY_STORE": "mongo", "RELAY_TIMEZONE": "Mars/Olympus", "RELAY_SEMANTIC_THRESHOLD": "1.5"}
        with mock.patch.dict(os.environ, env, clear=True):
            with self.assertRaises(ValueError) as ctx:
                RelayConfig.from_env(dotenv=False)
        message = str(ctx.exception)
        self.assertIn("RELAY_STORE", message)
        self.assertIn("RELAY_TIMEZONE", message)
        self.assertIn("RELAY_SEMANTIC_THRESHOLD", message)

    def test_bad_source_overrides(self):
        self.assertEqual(parse_source_overrides(""), {})
        with self.assertRaises(ValueError):
            parse_source_overrides("rss")
        with self.assertRaises(ValueError):
            parse_source_overrides("rss:high")


if __name__ == "__main__":
    unittest.main()
