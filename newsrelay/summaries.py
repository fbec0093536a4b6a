"""Fire-and-forget summary requests.

The published article keeps ``summary_status = 'pending'``; an out-of-band
summarizer behind ``SUMMARY_WEBHOOK_URL`` picks it up and owns the status
from there.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import requests

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 8000


class SummaryRequester:
    def __init__(self, webhook_url: Optional[str], timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def _post(self, article_id: str, text: str) -> None:
        try:
            response = requests.post(
                self.webhook_url,
                json={"article_id": article_id, "text": text[:MAX_TEXT_CHARS]},
                timeout=self.timeout,
            )
            response.raise_for_status()
            logger.info(f"Summary requested for article {article_id}")
        except requests.exceptions.RequestException as e:
            logger.warning(f"Summary request for {article_id} failed: {e}")

    def request_summary_async(self, article_id: str, text: str) -> Optional[threading.Thread]:
        if not self.webhook_url:
            logger.debug("SUMMARY_WEBHOOK_URL not set; leaving summary pending")
            return None
        thread = threading.Thread(
            target=self._post,
            args=(article_id, text or ""),
            name=f"summary-{article_id}",
            daemon=True,
        )
        thread.start()
        return thread
