"""Full-article fetch + extraction for the backfill step.

Only the single chosen candidate is fetched. Failures come back as a result
with ``success=False``; nothing here raises into the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass
from html import escape
from typing import Optional

import ipaddress
import logging
from urllib.parse import urlparse

import requests
import trafilatura
from trafilatura.metadata import extract_metadata

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class FullArticleResult:
    success: bool
    title: Optional[str] = None
    content: Optional[str] = None  # paragraph markup
    text_content: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None
    error: Optional[str] = None


_PRIVATE_NETS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]


def _is_private_ip(hostname: str) -> bool:
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return any(ip in net for net in _PRIVATE_NETS)


def validate_fetch_url(url: str) -> Optional[str]:
    """Return an error code if *url* must not be fetched (SSRF guard)."""
    try:
        p = urlparse(url)
    except ValueError:
        return "invalid_url"
    if p.scheme not in ("http", "https"):
        return "bad_scheme"
    host = (p.hostname or "").strip().lower()
    if not host:
        return "missing_host"
    if host in ("localhost", "localhost.localdomain"):
        return "blocked_host"
    if _is_private_ip(host):
        return "blocked_private_ip"
    return None


def _paragraph_markup(text: str) -> str:
    paragraphs = [p.strip() for p in text.split("\n") if p.strip()]
    return "".join(f"<p>{escape(p)}</p>" for p in paragraphs)


def _first_category(meta) -> Optional[str]:
    cats = getattr(meta, "categories", None) or []
    if isinstance(cats, str):
        cats = [c for c in cats.split(",")]
    for c in cats:
        c = (c or "").strip()
        if c:
            return c
    return None


def fetch_full_article(url: str, *, timeout: float = 10, max_bytes: int = 2_000_000) -> FullArticleResult:
    if not url:
        return FullArticleResult(success=False, error="empty_url")
    err = validate_fetch_url(url)
    if err:
        return FullArticleResult(success=False, error=err)
    try:
        resp = requests.get(
            url,
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            allow_redirects=True,
            stream=True,
        )
        if resp.status_code >= 400:
            return FullArticleResult(success=False, error=f"http_{resp.status_code}")
        # Size guardrail: read up to max_bytes
        body = b""
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            if not chunk:
                continue
            body += chunk
            if len(body) > max_bytes:
                return FullArticleResult(success=False, error="too_large")
        html = body.decode(resp.encoding or "utf-8", errors="replace")
    except (requests.RequestException, LookupError) as e:
        logger.warning(f"Full article fetch failed for {url}: {e}")
        return FullArticleResult(success=False, error=str(e))

    if not html.strip():
        return FullArticleResult(success=False, error="empty_html")

    text = trafilatura.extract(html, include_comments=False, include_tables=False)
    if not text or not text.strip():
        return FullArticleResult(success=False, error="no_extract")
    text = text.strip()

    meta = extract_metadata(html, default_url=url)
    return FullArticleResult(
        success=True,
        title=(getattr(meta, "title", None) or None),
        content=_paragraph_markup(text),
        text_content=text,
        image=(getattr(meta, "image", None) or None),
        category=_first_category(meta),
    )
