"""Three-layer duplicate detection.

Layers, cheapest first:
- exact: SHA-256 of the normalized URL
- content_hash: SHA-256 of the first 500 normalized characters of the body
- semantic: Jaccard similarity of word-bigram shingles against summaries
  published in a trailing window

The module keeps no state; lookups go through the article store.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional, Set

from newsrelay.ingestion.url_utils import normalize_url, url_hash

if TYPE_CHECKING:
    from newsrelay.storage.base import ArticleStore

logger = logging.getLogger(__name__)

CONTENT_PREFIX_CHARS = 500
SEMANTIC_THRESHOLD = 0.92
SEMANTIC_WINDOW_HOURS = 24

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")
# Bengali block kept explicitly: its vowel signs are not matched by \w.
_NON_WORD_RE = re.compile(r"[^\w\s\u0980-\u09FF]")


@dataclass(frozen=True)
class DuplicateResult:
    is_duplicate: bool
    type: str  # exact | content_hash | semantic | none
    original_id: Optional[str] = None
    confidence: float = 0.0


NOT_DUPLICATE = DuplicateResult(is_duplicate=False, type="none")


def normalize_text(text: str) -> str:
    if not text:
        return ""
    cleaned = _TAG_RE.sub("", text)
    cleaned = _WS_RE.sub(" ", cleaned).strip().lower()
    return cleaned[:CONTENT_PREFIX_CHARS]


def content_hash(text: str) -> str:
    """Hash of the normalized body prefix; empty text hashes to ``""``."""
    norm = normalize_text(text or "")
    if not norm:
        return ""
    return hashlib.sha256(norm.encode("utf-8")).hexdigest()


def shingles(text: str) -> Set[str]:
    words = [w for w in _NON_WORD_RE.sub("", (text or "").lower()).split() if w]
    return {f"{words[i]} {words[i + 1]}" for i in range(len(words) - 1)}


def jaccard_similarity(text_a: str, text_b: str) -> float:
    a = shingles(text_a)
    b = shingles(text_b)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class DedupEngine:
    def __init__(
        self,
        store: "ArticleStore",
        *,
        semantic_threshold: float = SEMANTIC_THRESHOLD,
        semantic_window_hours: int = SEMANTIC_WINDOW_HOURS,
    ):
        self.store = store
        self.semantic_threshold = semantic_threshold
        self.semantic_window_hours = semantic_window_hours

    def check_url(self, clean_url: str) -> DuplicateResult:
        h = url_hash(clean_url)
        if not h:
            return NOT_DUPLICATE
        original = self.store.find_article_id_by_url_hash(h)
        if original:
            return DuplicateResult(True, "exact", original, 1.0)
        return NOT_DUPLICATE

    def check_content(self, text: str) -> DuplicateResult:
        h = content_hash(text)
        if not h:
            return NOT_DUPLICATE
        original = self.store.find_article_id_by_content_hash(h)
        if original:
            return DuplicateResult(True, "content_hash", original, 1.0)
        return NOT_DUPLICATE

    def check_semantic(self, summary: str, now: Optional[datetime] = None) -> DuplicateResult:
        if not summary or not summary.strip():
            return NOT_DUPLICATE
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(hours=self.semantic_window_hours)
        for article_id, stored_summary in self.store.recent_summaries(since):
            if not stored_summary:
                continue
            score = jaccard_similarity(summary, stored_summary)
            if score > self.semantic_threshold:
                logger.info(f"[Dedup] semantic match {score:.3f} against article {article_id}")
                return DuplicateResult(True, "semantic", article_id, score)
        return NOT_DUPLICATE

    def check(self, url: str, text: str = "", summary: str = "") -> DuplicateResult:
        """Run every layer in order and return the first hit."""
        result = self.check_url(normalize_url(url))
        if not result.is_duplicate:
            result = self.check_content(text)
        if not result.is_duplicate:
            result = self.check_semantic(summary)
        return result
