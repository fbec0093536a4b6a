"""URL normalization helpers for dedup.

The normalized form is what gets hashed and stored as ``normalized_url_hash``;
lookups never query by the raw URL string.
"""

from __future__ import annotations

import hashlib
from typing import Iterable, Optional
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit, urlunsplit


DEFAULT_STRIP_QUERY_PARAMS = {
    # tracking
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "utm_id",
    # misc common trackers
    "gclid",
    "fbclid",
    "ref",
    "source",
}


def _is_tracking_param(key: str, strip: set) -> bool:
    k = key.lower()
    return k in strip or k.startswith("utm_")


_PATH_ESCAPES = {"%": "%25", "?": "%3F", "#": "%23"}


def _normalize_path(path: str) -> str:
    # Decode once; re-escape only what would change how the URL parses again.
    decoded = unquote(path or "")
    escaped = "".join(
        _PATH_ESCAPES.get(ch) or (quote(ch) if ch.isspace() else ch)
        for ch in decoded
    )
    return escaped.rstrip("/")


def normalize_url(url: str, *, strip_params: Optional[Iterable[str]] = None) -> str:
    """Normalize a URL for dedup.

    - Force https, lowercase hostname
    - Strip tracking query parameters, sort the rest
    - Decode the path and strip trailing slashes
    - Remove fragments

    Input without a parseable host is returned unchanged so callers never
    fail on odd links.
    """
    if not url or not url.strip():
        return url
    strip = {p.lower() for p in strip_params} if strip_params is not None else set(DEFAULT_STRIP_QUERY_PARAMS)
    try:
        p = urlsplit(url.strip())
        host = (p.hostname or "").lower()
        if not host:
            return url
        port = p.port
    except ValueError:
        return url

    netloc = host
    if port and port not in (80, 443):
        netloc = f"{host}:{port}"

    kept = []
    for k, v in parse_qsl(p.query, keep_blank_values=True):
        if _is_tracking_param(k, strip):
            continue
        kept.append((k, v))
    kept.sort(key=lambda kv: (kv[0].lower(), kv[1]))
    query = urlencode(kept, doseq=True)

    return urlunsplit(("https", netloc, _normalize_path(p.path), query, ""))


def url_hash(url: str) -> str:
    """Stable hash for an already-normalized URL."""
    if not url:
        return ""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def host_of(url: Optional[str]) -> Optional[str]:
    try:
        host = (urlsplit(url or "").hostname or "").lower().strip()
        return host or None
    except ValueError:
        return None


def path_depth(url: str) -> int:
    """Number of non-empty path segments in *url*."""
    try:
        path = urlsplit(url or "").path
    except ValueError:
        return 0
    return len([seg for seg in path.split("/") if seg])
