#!/usr/bin/env python3
"""HTTP trigger for the relay.

External schedulers (cron-job.org and the like) hit ``GET /api/cron/rss``;
``force=true`` bypasses the time window and cooldown, ``dry=true`` runs the
decision chain without writing anything. When ``CRON_SECRET`` is set the
request must carry ``Authorization: Bearer <secret>`` or ``?key=<secret>``.

Run with ``flask --app cron_api:create_app run`` or any WSGI server.
"""

import logging
import os
import secrets
from datetime import datetime, timezone
from functools import wraps
from typing import Optional

from flask import Flask, jsonify, request

from newsrelay.config import RelayConfig
from newsrelay.orchestration.runner import build_gate, build_store
from newsrelay.scheduling.gate import SchedulingGate
from newsrelay.storage.base import ArticleStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

CRON_USER_AGENT = "cron-job.org"


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() == "true"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def create_app(
    config: Optional[RelayConfig] = None,
    store: Optional[ArticleStore] = None,
    gate: Optional[SchedulingGate] = None,
) -> Flask:
    config = config or RelayConfig.from_env()
    store = store or build_store(config)
    gate = gate or build_gate(config, store)

    app = Flask(__name__)

    def require_cron_secret(f):
        """Bearer token or ``?key=`` check, skipped when no secret is configured"""
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if config.cron_secret:
                auth_header = request.headers.get('Authorization', '')
                token = auth_header[7:] if auth_header.startswith('Bearer ') else ''
                key = request.args.get('key', '')
                expected = config.cron_secret.encode()
                authorized = secrets.compare_digest(token.encode(), expected) or secrets.compare_digest(
                    key.encode(), expected
                )
                if not authorized:
                    logger.warning("Unauthorized cron attempt")
                    return jsonify({'success': False, 'error': 'Unauthorized'}), 401
            return f(*args, **kwargs)
        return decorated_function

    @app.route('/api/cron/rss', methods=['GET'])
    def cron_rss():
        """Run one gated acquisition cycle."""
        user_agent = (request.headers.get('User-Agent') or '').lower()
        if CRON_USER_AGENT in user_agent:
            try:
                store.increment_trigger_count()
            except Exception as e:
                logger.error(f"Could not count cron trigger: {e}")
        return _run_cycle()

    @require_cron_secret
    def _run_cycle():
        force = _flag('force')
        dry_run = _flag('dry')
        try:
            result = gate.run(force=force, dry_run=dry_run)
        except Exception as e:
            logger.error(f"Cron run failed: {e}", exc_info=True)
            return jsonify({'success': False, 'exit_reason': 'error', 'error': str(e)}), 500
        payload = result.to_dict()
        payload.update({'skipped': result.skipped, 'force': force, 'dry_run': dry_run})
        return jsonify(payload)

    @app.route('/api/cron/runs', methods=['GET'])
    @require_cron_secret
    def cron_runs():
        """Most recent run-log rows, newest first."""
        try:
            limit = int(request.args.get('limit', 20))
        except (TypeError, ValueError):
            limit = 20
        limit = max(1, min(limit, 200))
        try:
            logs = store.recent_run_logs(limit)
        except Exception as e:
            logger.error(f"Error listing run logs: {e}", exc_info=True)
            return jsonify({'success': False, 'error': str(e)}), 500
        return jsonify({
            'success': True,
            'runs': [
                {
                    'run_id': log.run_id,
                    'started_at': _iso(log.started_at),
                    'duration_ms': log.duration_ms,
                    'success': log.success,
                    'exit_reason': log.exit_reason,
                    'source_used': log.source_used,
                    'posted_article_id': log.posted_article_id,
                    'run_type': log.run_type,
                    'tried_sources': list(log.tried_sources),
                    'detail': log.detail,
                }
                for log in logs
            ],
        })

    @app.route('/api/cron/status', methods=['GET'])
    @require_cron_secret
    def cron_status():
        """Current schedule state: lock, counters, disabled sources."""
        try:
            state = store.load_schedule_state()
        except Exception as e:
            logger.error(f"Error loading schedule state: {e}", exc_info=True)
            return jsonify({'success': False, 'error': str(e)}), 500
        now = datetime.now(timezone.utc)
        return jsonify({
            'success': True,
            'lock_active': state.lock_until is not None and now < state.lock_until,
            'lock_until': _iso(state.lock_until),
            'last_posted_at': _iso(state.last_posted_at),
            'update_interval_minutes': state.update_interval_minutes,
            'start_time': state.start_time,
            'last_reset_date': state.last_reset_date,
            'posts_today': state.posts_today,
            'disabled_sources': sorted(state.disabled_sources),
            'consecutive_failed_runs': state.consecutive_failed_runs,
            'last_run_at': _iso(state.last_run_at),
            'avg_minutes_between_posts': state.avg_minutes_between_posts,
            'trigger_count': state.trigger_count,
            'timestamp': now.isoformat(),
        })

    return app


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=int(os.environ.get('PORT', 5055)))
