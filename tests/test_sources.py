import random
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import requests

from newsrelay.config import RelayConfig
from newsrelay.ingestion.article_types import FeedRecord
from newsrelay.ingestion.sources import (
    AggregatorSearchSource,
    DirectSiteSource,
    SiteConfig,
    SourceError,
    SourceKind,
    SubscribedFeedSource,
    default_source_chain,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _response(text="", url="", status=200, content=None):
    resp = mock.Mock()
    resp.text = text
    resp.content = content if content is not None else text.encode("utf-8")
    resp.url = url
    resp.status_code = status
    return resp


SEARCH_HTML = """
<html><body>
  <article>
    <a href="./articles/short">Short</a>
    <h3>Too</h3>
  </article>
  <article>
    <a href="./articles/CBMiVideo">Watch the flood coverage on video today</a>
  </article>
  <article>
    <a href="./articles/CBMiFront">Front page of the national daily newspaper</a>
  </article>
  <article>
    <div class="vr1PYe">The Daily Star</div>
    <a href="./articles/CBMiGood"><h4>Flood waters recede across northern districts</h4></a>
  </article>
</body></html>
"""


class TestAggregatorSearchSource(unittest.TestCase):
    def setUp(self):
        self.source = AggregatorSearchSource(search_url="https://news.google.com/search?q=x")

    def test_extract_links_filters_short_titles_and_absolutizes(self):
        items = self.source.extract_links(SEARCH_HTML)
        self.assertEqual(len(items), 3)
        title, link, publisher = items[2]
        self.assertEqual(title, "Flood waters recede across northern districts")
        self.assertEqual(link, "https://news.google.com/articles/CBMiGood")
        self.assertEqual(publisher, "The Daily Star")

    def test_returns_first_resolved_article_link(self):
        destinations = {
            "https://news.google.com/articles/CBMiVideo": "https://www.youtube.com/watch?v=1",
            "https://news.google.com/articles/CBMiFront": "https://paper.example.com/",
            "https://news.google.com/articles/CBMiGood": "https://www.thedailystar.net/news/flood-recede?utm_source=gn",
        }

        def head(url, **kwargs):
            return _response(url=destinations[url])

        with mock.patch("newsrelay.ingestion.sources.requests.get", return_value=_response(SEARCH_HTML)) as get, \
                mock.patch("newsrelay.ingestion.sources.requests.head", side_effect=head):
            cand = self.source.fetch_candidate()

        self.assertEqual(get.call_count, 1)
        self.assertIsNotNone(cand)
        self.assertEqual(cand.title, "Flood waters recede across northern districts")
        self.assertEqual(cand.clean_url, "https://www.thedailystar.net/news/flood-recede")
        self.assertEqual(cand.source_name, "The Daily Star")
        self.assertIsNone(cand.content)

    def test_single_segment_article_path_is_accepted(self):
        html = (
            '<article><a href="./articles/A">Home page of a big daily paper</a></article>'
            '<article><a href="./articles/B">Flood toll rises in the north again</a></article>'
        )
        destinations = {
            "https://news.google.com/articles/A": "https://www.thedailystar.net/",
            "https://news.google.com/articles/B": "https://www.thedailystar.net/bangladesh-flood-toll-rises-123",
        }
        with mock.patch("newsrelay.ingestion.sources.requests.get", return_value=_response(html)), \
                mock.patch(
                    "newsrelay.ingestion.sources.requests.head",
                    side_effect=lambda url, **kwargs: _response(url=destinations[url]),
                ):
            cand = self.source.fetch_candidate()
        self.assertEqual(cand.clean_url, "https://www.thedailystar.net/bangladesh-flood-toll-rises-123")
        self.assertEqual(cand.title, "Flood toll rises in the north again")

    def test_falls_back_to_get_when_head_stays_on_aggregator(self):
        html = '<article><a href="./articles/X">A sufficiently long headline here</a></article>'
        responses = [
            _response(html),
            _response(url="https://site.example.org/world/story-1"),
        ]
        with mock.patch("newsrelay.ingestion.sources.requests.get", side_effect=responses), \
                mock.patch(
                    "newsrelay.ingestion.sources.requests.head",
                    return_value=_response(url="https://news.google.com/articles/X"),
                ):
            cand = self.source.fetch_candidate()
        self.assertEqual(cand.source_url, "https://site.example.org/world/story-1")

    def test_unresolvable_links_yield_nothing(self):
        html = '<article><a href="./articles/X">A sufficiently long headline here</a></article>'
        with mock.patch("newsrelay.ingestion.sources.requests.get", return_value=_response(html)), \
                mock.patch(
                    "newsrelay.ingestion.sources.requests.head",
                    side_effect=requests.ConnectionError("boom"),
                ):
            self.assertIsNone(self.source.fetch_candidate())

    def test_search_page_failure_raises_source_error(self):
        with mock.patch("newsrelay.ingestion.sources.requests.get", return_value=_response(status=503)):
            with self.assertRaises(SourceError):
                self.source.fetch_candidate()
        with mock.patch("newsrelay.ingestion.sources.requests.get", side_effect=requests.Timeout("slow")):
            with self.assertRaises(SourceError):
                self.source.fetch_candidate()


LISTING_HTML = """
<html><body>
  <a class="card-link" href="https://ads.example.com/promo/1">Ad</a>
  <a class="card-link" href="/bangladesh/story-abc">Story</a>
  <a class="story-link" href="https://www.prothomalo.com/world/story-def">Other</a>
</body></html>
"""


class TestDirectSiteSource(unittest.TestCase):
    def test_returns_first_own_domain_link(self):
        site = SiteConfig("Prothom Alo", "https://www.prothomalo.com/collection/latest", "a.card-link, a.story-link")
        source = DirectSiteSource(sites=[site], rng=random.Random(1))
        with mock.patch("newsrelay.ingestion.sources.requests.get", return_value=_response(LISTING_HTML)):
            cand = source.fetch_candidate()
        self.assertEqual(cand.source_url, "https://www.prothomalo.com/bangladesh/story-abc")
        self.assertEqual(cand.clean_url, "https://www.prothomalo.com/bangladesh/story-abc")
        self.assertEqual(cand.title, "")
        self.assertEqual(cand.source_name, "Prothom Alo")

    def test_no_own_domain_links(self):
        site = SiteConfig("Kaler Kantho", "https://www.kalerkantho.com/online/all-news", "h3 a")
        html = '<h3><a href="https://elsewhere.example.com/x/y">x</a></h3>'
        source = DirectSiteSource(sites=[site])
        with mock.patch("newsrelay.ingestion.sources.requests.get", return_value=_response(html)):
            self.assertIsNone(source.fetch_candidate())


FEED_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Test Feed</title>
  <item><title>No link here</title></item>
  <item>
    <title>Budget passed in parliament</title>
    <link>https://feed.example.com/politics/budget-passed?utm_source=rss</link>
    <description>&lt;p&gt;The budget was &lt;b&gt;passed&lt;/b&gt; late on Monday.&lt;/p&gt;</description>
    <pubDate>Mon, 02 Mar 2026 10:00:00 GMT</pubDate>
  </item>
</channel></rss>
"""


class TestSubscribedFeedSource(unittest.TestCase):
    def _store(self, feeds):
        store = mock.Mock()
        store.list_feeds.return_value = feeds
        return store

    def test_picks_eligible_feed_and_first_linked_entry(self):
        feeds = [
            FeedRecord(id="cooling", url="https://cool.example.com/rss", cooldown_until=NOW + timedelta(minutes=5)),
            FeedRecord(id="f1", url="https://feed.example.com/rss", name="Feed One", cooldown_minutes=45, category="Politics"),
        ]
        source = SubscribedFeedSource(store=self._store(feeds), clock=lambda: NOW)
        with mock.patch("newsrelay.ingestion.sources.requests.get", return_value=_response(content=FEED_XML)) as get:
            cand = source.fetch_candidate()
        get.assert_called_once()
        self.assertEqual(get.call_args[0][0], "https://feed.example.com/rss")
        self.assertEqual(cand.title, "Budget passed in parliament")
        self.assertEqual(cand.clean_url, "https://feed.example.com/politics/budget-passed")
        self.assertEqual(cand.summary, "The budget was passed late on Monday.")
        self.assertEqual((cand.feed_id, cand.cooldown_minutes, cand.category), ("f1", 45, "Politics"))

    def test_all_feeds_cooling_down(self):
        feeds = [FeedRecord(id="a", url="https://a.example.com/rss", cooldown_until=NOW + timedelta(hours=1))]
        source = SubscribedFeedSource(store=self._store(feeds), clock=lambda: NOW)
        with mock.patch("newsrelay.ingestion.sources.requests.get") as get:
            self.assertIsNone(source.fetch_candidate())
        get.assert_not_called()

    def test_elapsed_cooldown_is_eligible(self):
        feed = FeedRecord(id="a", url="https://a.example.com/rss", cooldown_until=NOW)
        self.assertTrue(feed.is_eligible(NOW))
        self.assertFalse(FeedRecord(id="b", url="https://b", enabled=False).is_eligible(NOW))


class TestDefaultChain(unittest.TestCase):
    def test_priorities_and_overrides(self):
        chain = default_source_chain(RelayConfig(), mock.Mock())
        self.assertEqual(
            [e.kind for e in chain],
            [SourceKind.AGGREGATOR_SEARCH, SourceKind.DIRECT_SITE, SourceKind.SUBSCRIBED_FEED],
        )
        config = RelayConfig(source_overrides={"rss": (0, True), "direct-web-scraper": (5, False)})
        chain = default_source_chain(config, mock.Mock())
        self.assertEqual([e.id for e in chain], ["rss", "google-news-aggregator", "direct-web-scraper"])
        self.assertFalse(chain[-1].enabled)


if __name__ == "__main__":
    unittest.main()
