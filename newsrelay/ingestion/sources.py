"""Source adapters for the acquisition chain.

Every adapter exposes ``fetch_candidate() -> Optional[Candidate]`` and makes
one best-effort attempt per call. Adapters only return metadata that is cheap
to get from a listing page or feed; the article body is fetched later by the
orchestrator, once, for the chosen candidate.

Priority and enablement are data on ``SourceEntry``, not adapter behavior.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import feedparser
import requests
from bs4 import BeautifulSoup

from newsrelay.ingestion.article_types import Candidate
from newsrelay.ingestion.url_utils import host_of, normalize_url, path_depth

if TYPE_CHECKING:
    from newsrelay.config import RelayConfig
    from newsrelay.storage.base import ArticleStore

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_TIMEOUT = 10
MAX_LINKS = 5
MIN_TITLE_CHARS = 10


class SourceKind(str, Enum):
    AGGREGATOR_SEARCH = "aggregator_search"
    DIRECT_SITE = "direct_site"
    SUBSCRIBED_FEED = "subscribed_feed"


class SourceError(Exception):
    """Raised by an adapter when its upstream cannot be read."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _get(url: str, timeout: float) -> requests.Response:
    try:
        resp = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
    except requests.RequestException as e:
        raise SourceError(f"GET {url} failed: {e}") from e
    if resp.status_code >= 400:
        raise SourceError(f"GET {url} returned HTTP {resp.status_code}")
    return resp


def _host_matches(host: Optional[str], domain: str) -> bool:
    if not host:
        return False
    return host == domain or host.endswith("." + domain)


def _strip_markup(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    cleaned = BeautifulSoup(text, "html.parser").get_text(" ", strip=True)
    return cleaned or None


class BaseSource:
    kind: SourceKind

    def fetch_candidate(self) -> Optional[Candidate]:
        raise NotImplementedError


# Video hosts are never articles.
_VIDEO_HOSTS = ("youtube.com", "youtu.be")


@dataclass(frozen=True)
class AggregatorSearchSource(BaseSource):
    """Scrape a news aggregator's search results and resolve its redirect links."""

    search_url: str
    aggregator_base: str = "https://news.google.com/"
    selectors: Sequence[str] = (
        'a[href^="./articles/"]',
        'a[jslog*="track:click"]',
        "article a",
    )
    source_name: str = "Google News"
    timeout: float = DEFAULT_TIMEOUT
    min_path_depth: int = 1

    kind: SourceKind = SourceKind.AGGREGATOR_SEARCH

    @property
    def aggregator_host(self) -> str:
        return host_of(self.aggregator_base) or ""

    def _absolute(self, href: str) -> str:
        if href.startswith("./"):
            return self.aggregator_base.rstrip("/") + "/" + href[2:]
        return urljoin(self.aggregator_base, href)

    def extract_links(self, html: str) -> List[Tuple[str, str, str]]:
        """(title, link, publisher) triples in page order, at most ``MAX_LINKS``."""
        soup = BeautifulSoup(html, "html.parser")
        seen = set()
        out: List[Tuple[str, str, str]] = []
        for el in soup.select(", ".join(self.selectors)):
            href = (el.get("href") or "").strip()
            if not href or href in seen:
                continue
            parent = el.find_parent("article") or el.find_parent("div", attrs={"jslog": True})
            title = el.get_text(" ", strip=True)
            if len(title) < MIN_TITLE_CHARS:
                heading = el.select_one('h3, h4, div[role="heading"]')
                if heading is None and parent is not None:
                    heading = parent.select_one("h3, h4")
                title = heading.get_text(" ", strip=True) if heading is not None else ""
            if len(title) < MIN_TITLE_CHARS:
                continue
            publisher = ""
            if parent is not None:
                tag = parent.select_one(".vr1PYe, div[data-n-tid]")
                publisher = tag.get_text(" ", strip=True) if tag is not None else ""
            seen.add(href)
            out.append((title, self._absolute(href), publisher))
            if len(out) >= MAX_LINKS:
                break
        return out

    def resolve(self, link: str) -> Optional[str]:
        """Follow the aggregator redirect; ``None`` if it never leaves the aggregator."""
        if host_of(link) != self.aggregator_host:
            return link
        headers = {"User-Agent": USER_AGENT}
        try:
            resp = requests.head(link, headers=headers, timeout=self.timeout, allow_redirects=True)
            if resp.url and host_of(resp.url) != self.aggregator_host:
                return resp.url
            resp = requests.get(link, headers=headers, timeout=self.timeout, allow_redirects=True)
            if resp.url and host_of(resp.url) != self.aggregator_host:
                return resp.url
        except requests.RequestException as e:
            logger.info(f"[Aggregator] Could not resolve {link}: {e}")
        return None

    def fetch_candidate(self) -> Optional[Candidate]:
        resp = _get(self.search_url, self.timeout)
        items = self.extract_links(resp.text)
        logger.info(f"[Aggregator] Found {len(items)} raw items")
        for title, link, publisher in items:
            real_url = self.resolve(link)
            if not real_url:
                continue
            host = host_of(real_url)
            if any(_host_matches(host, v) for v in _VIDEO_HOSTS):
                continue
            clean = normalize_url(real_url)
            if path_depth(clean) < self.min_path_depth:
                continue
            logger.info(f"[Aggregator] Candidate: {title[:80]} -> {clean}")
            return Candidate(
                title=title,
                source_url=real_url,
                clean_url=clean,
                source_name=publisher or self.source_name,
            )
        logger.info("[Aggregator] No usable link on the results page")
        return None


@dataclass(frozen=True)
class SiteConfig:
    name: str
    list_url: str
    link_selector: str
    domain: Optional[str] = None

    @property
    def own_domain(self) -> str:
        host = self.domain or host_of(self.list_url) or ""
        return host[4:] if host.startswith("www.") else host


def default_sites() -> List[SiteConfig]:
    return [
        SiteConfig("Prothom Alo", "https://www.prothomalo.com/collection/latest", "a.card-link, a.story-link"),
        SiteConfig("Kaler Kantho", "https://www.kalerkantho.com/online/all-news", "h3 a, .title a"),
    ]


@dataclass(frozen=True)
class DirectSiteSource(BaseSource):
    """Pick one known site at random and take the first own-domain link from its listing."""

    sites: Sequence[SiteConfig] = field(default_factory=default_sites)
    timeout: float = DEFAULT_TIMEOUT
    rng: random.Random = field(default_factory=random.Random, compare=False)

    kind: SourceKind = SourceKind.DIRECT_SITE

    def fetch_candidate(self) -> Optional[Candidate]:
        if not self.sites:
            return None
        site = self.rng.choice(list(self.sites))
        logger.info(f"[DirectSite] Checking site: {site.name}")
        resp = _get(site.list_url, self.timeout)
        soup = BeautifulSoup(resp.text, "html.parser")
        links = []
        for el in soup.select(site.link_selector):
            href = (el.get("href") or "").strip()
            if href:
                links.append(urljoin(site.list_url, href))
            if len(links) >= MAX_LINKS:
                break
        for link in links:
            clean = normalize_url(link)
            if not _host_matches(host_of(clean), site.own_domain):
                continue
            logger.info(f"[DirectSite] Candidate from {site.name}: {clean}")
            return Candidate(title="", source_url=link, clean_url=clean, source_name=site.name)
        logger.info(f"[DirectSite] No own-domain link found on {site.name}")
        return None


@dataclass(frozen=True)
class SubscribedFeedSource(BaseSource):
    """One random eligible feed per call; per-feed cooldown lives in the store."""

    store: "ArticleStore"
    timeout: float = DEFAULT_TIMEOUT
    rng: random.Random = field(default_factory=random.Random, compare=False)
    clock: Callable[[], datetime] = _utcnow

    kind: SourceKind = SourceKind.SUBSCRIBED_FEED

    def fetch_candidate(self) -> Optional[Candidate]:
        now = self.clock()
        feeds = [f for f in self.store.list_feeds(enabled_only=True) if f.is_eligible(now)]
        if not feeds:
            logger.info("[Feeds] No eligible feeds (all disabled or cooling down)")
            return None
        feed = self.rng.choice(feeds)
        logger.info(f"[Feeds] Parsing feed: {feed.name or feed.id} ({feed.url})")
        resp = _get(feed.url, self.timeout)
        parsed = feedparser.parse(resp.content)
        if getattr(parsed, "bozo", False) and not parsed.entries:
            raise SourceError(f"feed {feed.id} could not be parsed: {parsed.get('bozo_exception')}")
        for entry in parsed.entries or []:
            link = (entry.get("link") or "").strip()
            if not link:
                continue
            title = (entry.get("title") or "").strip()
            summary = _strip_markup(entry.get("summary") or entry.get("description"))
            published = entry.get("published") or entry.get("updated") or None
            return Candidate(
                title=title,
                source_url=link,
                clean_url=normalize_url(link),
                source_name=feed.name or "RSS",
                summary=summary,
                published_at=published,
                category=feed.category,
                feed_id=feed.id,
                cooldown_minutes=feed.cooldown_minutes,
            )
        logger.info(f"[Feeds] Feed {feed.id} has no entries with a link")
        return None


@dataclass(frozen=True)
class SourceEntry:
    id: str
    name: str
    priority: int  # lower is tried first
    adapter: BaseSource
    enabled: bool = True

    @property
    def kind(self) -> SourceKind:
        return self.adapter.kind


AGGREGATOR_SOURCE_ID = "google-news-aggregator"
DIRECT_SITE_SOURCE_ID = "direct-web-scraper"
FEED_SOURCE_ID = "rss"

DEFAULT_AGGREGATOR_URL = (
    "https://news.google.com/search?q=%E0%A6%AC%E0%A6%BE%E0%A6%82%E0%A6%B2%E0%A6%BE%E0%A6%A6%E0%A7%87%E0%A6%B6"
    "&hl=bn&gl=BD&ceid=BD:bn"
)


def apply_source_overrides(
    chain: Sequence[SourceEntry], overrides: Dict[str, Tuple[int, bool]]
) -> List[SourceEntry]:
    out = []
    for entry in chain:
        if entry.id in overrides:
            priority, enabled = overrides[entry.id]
            entry = replace(entry, priority=priority, enabled=enabled)
        out.append(entry)
    return sorted(out, key=lambda e: e.priority)


def default_source_chain(config: "RelayConfig", store: "ArticleStore") -> List[SourceEntry]:
    """Priority-ordered chain: aggregator search, direct sites, subscribed feeds."""
    timeout = config.http_timeout
    chain = [
        SourceEntry(
            id=AGGREGATOR_SOURCE_ID,
            name="Google News Aggregator",
            priority=1,
            adapter=AggregatorSearchSource(search_url=config.aggregator_url, timeout=timeout),
        ),
        SourceEntry(
            id=DIRECT_SITE_SOURCE_ID,
            name="Direct Website Scraper",
            priority=2,
            adapter=DirectSiteSource(timeout=timeout),
        ),
        SourceEntry(
            id=FEED_SOURCE_ID,
            name="RSS Feed",
            priority=3,
            adapter=SubscribedFeedSource(store=store, timeout=timeout),
        ),
    ]
    return apply_source_overrides(chain, config.source_overrides)
