import time

import feedparser
import pytest

from config import config
from sources import (
    build_registry,
    parse_hackernews,
    parse_lobsters,
    parse_producthunt,
    parse_reddit,
    parse_rss_entries,
    parse_slashdot,
    parse_techcrunch,
    reddit_getters,
    hackernews_getters,
)

HN_HTML = """
<table>
  <tr class="athing" id="101"><td><span class="titleline"><a href="https://rust-lang.org">Rust 2.0</a> <span>(rust-lang.org)</span></span></td></tr>
  <tr><td><span class="score" id="score_101">120 points</span></td></tr>
  <tr class="athing" id="102"><td><span class="titleline"><a href="item?id=102">Ask HN: Tabs or spaces?</a></span></td></tr>
  <tr class="athing"><td><span class="titleline"><a href="x">No id</a></span></td></tr>
</table>
"""

REDDIT_JSON = {
    "data": {
        "after": "t3_next",
        "children": [
            {"data": {"id": "abc", "title": "Cats", "permalink": "/r/aww/comments/abc/cats/", "score": 42,
                      "subreddit_name_prefixed": "r/aww", "created_utc": 1700000000.0}},
            {"data": {"id": "def", "title": "", "permalink": "/r/x/comments/def/"}},
        ],
    }
}

SLASHDOT_HTML = """
<article class="fhitem" data-fhid="555"><h2 class="story-title"><a href="//tech.slashdot.org/story/1">Linux news</a></h2></article>
<article class="fhitem"><h2 class="story-title"><a href="/story/2">Relative link</a></h2></article>
<article class="fhitem"><h2 class="story-title">No link</h2></article>
"""

TECHCRUNCH_HTML = """
<h3 class="loop-card__title"><a href="https://techcrunch.com/2024/01/01/startup-raises-money/">Startup raises money</a></h3>
<h2 class="post-block__title"><a href="https://techcrunch.com/2024/01/01/startup-raises-money/">Startup raises money again</a></h2>
<h3 class="loop-card__title"><a href="https://techcrunch.com/2024/01/02/short/">Tiny</a></h3>
<h3 class="loop-card__title"><a href="https://techcrunch.com/2024/01/03/ai-chips/">AI chip makers rally</a></h3>
"""

RSS_XML = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Feed</title>
<item><title>Hello</title><link>https://example.com/hello</link><pubDate>Tue, 14 Nov 2023 22:13:20 GMT</pubDate>
<description>&lt;p&gt;A greeting&lt;/p&gt;&lt;p&gt;more&lt;/p&gt;</description><guid>ph-1</guid></item>
<item><title>No date</title><link>https://example.com/nodate</link></item>
</channel></rss>
"""


def test_parse_hackernews_links_to_discussion():
    items = parse_hackernews(HN_HTML)
    assert [i["id"] for i in items] == ["101", "102"]
    assert items[0]["title"] == "Rust 2.0"
    assert items[0]["url"] == "https://news.ycombinator.com/item?id=101"
    assert items[0]["extra"] == {"info": "120 points"}
    assert "extra" not in items[1]


def test_parse_reddit_returns_cursor():
    result = parse_reddit(REDDIT_JSON)
    assert result["next_cursor"] == "t3_next"
    [item] = result["items"]
    assert item["url"] == "https://www.reddit.com/r/aww/comments/abc/cats/"
    assert item["pubDate"] == 1700000000000
    assert item["extra"] == {"info": "↑ 42", "hover": "r/aww"}
    assert parse_reddit(None) == {"items": [], "next_cursor": None}


def test_parse_lobsters():
    data = [
        {"short_id": "x1", "title": "Zig", "comments_url": "https://lobste.rs/s/x1", "score": 7, "tags": ["zig", "plt"]},
        {"short_id": "x2", "title": "No url"},
    ]
    [item] = parse_lobsters(data)
    assert item["extra"] == {"info": "7 pts", "hover": "zig, plt"}
    assert parse_lobsters({"error": "nope"}) == []


def test_parse_slashdot_makes_links_absolute():
    items = parse_slashdot(SLASHDOT_HTML)
    assert [(i["id"], i["url"]) for i in items] == [
        ("555", "https://tech.slashdot.org/story/1"),
        ("/story/2", "https://slashdot.org/story/2"),
    ]


def test_parse_techcrunch_dedupes_by_slug_and_skips_short_titles():
    items = parse_techcrunch(TECHCRUNCH_HTML)
    assert [i["id"] for i in items] == ["startup-raises-money", "ai-chips"]
    assert items[0]["title"] == "Startup raises money"


def test_parse_producthunt_appends_tagline():
    entries = feedparser.parse(RSS_XML).entries
    items = parse_producthunt(entries)
    assert items[0]["id"] == "ph-1"
    assert items[0]["title"] == "Hello: A greeting"
    assert items[0]["pubDate"] == 1700000000000
    assert items[1]["title"] == "No date"


def test_parse_rss_entries_uses_link_as_id():
    entries = feedparser.parse(RSS_XML).entries
    items = parse_rss_entries(entries)
    assert [i["id"] for i in items] == ["https://example.com/hello", "https://example.com/nodate"]
    assert items[0]["pubDate"] == 1700000000000
    assert "pubDate" not in parse_rss_entries(entries, hidden_date=True)[0]


def test_parse_rss_entries_accepts_plain_dicts():
    entries = [{"title": "T", "link": "https://example.com/t", "published_parsed": time.gmtime(1_700_000_000)}]
    [item] = parse_rss_entries(entries)
    assert item["pubDate"] == 1_700_000_000_000


class FakeStrategy:
    label = "fake"

    def __init__(self, responses):
        self.responses = responses
        self.requested = []

    async def fetch_text(self, url, headers=None, source_id=None):
        self.requested.append(url)
        return self.responses[url]

    async def fetch_json(self, url, headers=None, source_id=None):
        self.requested.append(url)
        return self.responses[url]


@pytest.mark.asyncio
async def test_hackernews_paginated_getter_requests_numbered_pages():
    strategy = FakeStrategy({
        "https://news.ycombinator.com": HN_HTML,
        "https://news.ycombinator.com/news?p=2": "<table></table>",
    })
    _, paginated = hackernews_getters(strategy)

    first = await paginated(None)
    assert first.next_params() == {"page": 2}
    second = await paginated(first.next_params())
    assert second.items == [] and second.has_more is False


@pytest.mark.asyncio
async def test_reddit_paginated_getter_passes_after_cursor():
    strategy = FakeStrategy({
        "https://www.reddit.com/r/popular.json?limit=30": REDDIT_JSON,
        "https://www.reddit.com/r/popular.json?limit=30&after=t3_next": {"data": {"children": [], "after": None}},
    })
    getter, paginated = reddit_getters(strategy)

    assert [i["id"] for i in await getter()] == ["abc"]
    first = await paginated(None)
    assert first.next_params() == {"cursor": "t3_next"}
    last = await paginated(first.next_params())
    assert last.has_more is False


def test_build_registry_uses_configured_intervals_aliases_and_rss(monkeypatch):
    monkeypatch.setattr(config, "SOURCES", {
        "hackernews": {"interval_ms": 300_000, "redirect": None, "name": "HN", "home": None, "disabled": False},
        "hn": {"interval_ms": 600_000, "redirect": "hackernews", "name": "hn", "home": None, "disabled": False},
        "slashdot": {"interval_ms": 600_000, "redirect": None, "name": "Slashdot", "home": None, "disabled": True},
        "bbc": {"interval_ms": 900_000, "redirect": None, "name": "BBC", "home": None, "disabled": False,
                "rss": "https://feeds.bbci.co.uk/news/rss.xml"},
    })
    registry = build_registry(FakeStrategy({}))

    assert registry.descriptor("hackernews").refresh_interval_ms == 300_000
    assert registry.descriptor("hackernews").name == "HN"
    assert registry.has_pagination_support("hackernews")
    assert registry.has_pagination_support("reddit")
    assert not registry.has_pagination_support("lobsters")
    assert registry.resolve("hn").id == "hackernews"
    assert "slashdot" not in registry
    assert registry.descriptor("bbc").refresh_interval_ms == 900_000
    assert registry.descriptor("reddit").refresh_interval_ms == config.DEFAULT_REFRESH_MINUTES * 60_000
