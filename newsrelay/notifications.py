"""Best-effort publish notifications over an HTTP webhook."""

from __future__ import annotations

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 200


class WebhookNotifier:
    def __init__(self, webhook_url: Optional[str], timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def notify(self, title: str, body: str, article_id: str) -> bool:
        """POST the new article to the webhook; False when unset or failing."""
        if not self.webhook_url:
            return False
        payload = {
            "title": title,
            "body": (body or "New News Available")[:MAX_BODY_CHARS],
            "article_id": article_id,
        }
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            logger.error(f"Notification webhook HTTP error: {e}")
            return False
        except requests.exceptions.RequestException as e:
            logger.error(f"Notification webhook error: {e}")
            return False
        logger.info(f"Notification sent for article {article_id}")
        return True
