#!/usr/bin/env python3
"""Relay worker.

Runs one gated acquisition cycle, or keeps running cycles on a fixed interval
(``RELAY_MODE=scheduled``). The gate decides whether a cycle actually posts;
the interval here only sets how often it is asked.

Flags: ``--force`` bypasses the time window and cooldown (not the lock),
``--dry-run`` runs the full decision chain without writing anything.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
import time

import schedule
from dotenv import load_dotenv

from newsrelay.config import RelayConfig
from newsrelay.orchestration.runner import build_gate, run_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('relay.log'),
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)


def _wait_for_summary_requests(timeout: float) -> None:
    # Summary requests run on daemon threads; give them a chance before exit.
    for t in threading.enumerate():
        if t.name.startswith("summary-"):
            t.join(timeout)


def run_once(force: bool = False, dry_run: bool = False) -> int:
    load_dotenv()
    config = RelayConfig.from_env()
    result = run_now(force=force, dry_run=dry_run, config=config)
    print(json.dumps(result.to_dict()))
    _wait_for_summary_requests(config.http_timeout)
    return 0 if result.success or result.skipped else 1


def run_scheduled() -> None:
    load_dotenv()
    config = RelayConfig.from_env()
    gate = build_gate(config)

    def job() -> None:
        try:
            result = gate.run()
            logger.info(f"[worker] {result.exit_reason.value} source={result.source_used} id={result.posted_article_id}")
        except Exception:
            # The gate already released the lock and logged the run.
            logger.exception("[worker] cycle failed")

    logger.info(f"[worker] scheduled every {config.schedule_minutes} minutes")
    schedule.every(config.schedule_minutes).minutes.do(job)
    job()
    while True:
        schedule.run_pending()
        time.sleep(5)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the news relay acquisition cycle")
    parser.add_argument("--force", action="store_true", help="bypass time window and cooldown")
    parser.add_argument("--dry-run", action="store_true", help="decide without writing anything")
    args = parser.parse_args(argv)

    mode = (os.environ.get("RELAY_MODE") or "once").lower().strip()
    if mode in ("scheduled", "daemon"):
        run_scheduled()
        return 0
    return run_once(force=args.force, dry_run=args.dry_run)


if __name__ == "__main__":
    raise SystemExit(main())
