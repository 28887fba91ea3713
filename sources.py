#!/usr/bin/env python3
"""
Source adapters and registry construction.

Each adapter turns one upstream site into a list of item dicts (see items.py).
Parsing is kept in plain functions over already-fetched text/JSON so it can be
exercised without the network; the getters bind those parsers to a
FetchStrategy.

Built-in adapters cover sites that need scraping or JSON APIs. Any other
source declared in sources.yaml with an ``rss`` url is served by the generic
RSS adapter.
"""

from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from bs4 import BeautifulSoup

from config import config, get_logger
from errors import UpstreamFetchError
from items import dedupe_by_id, make_item
from pagination import cursor_paginated, page_paginated
from registry import SourceGetter, SourceRegistry
from upstream import FetchStrategy, create_strategy
from utils import struct_time_to_ms, date_string_to_ms

logger = get_logger("sources")

PAGE_SIZE = 30

HACKERNEWS_URL = "https://news.ycombinator.com"
REDDIT_URL = "https://www.reddit.com"
LOBSTERS_URL = "https://lobste.rs/hottest.json"
PRODUCTHUNT_FEED = "https://www.producthunt.com/feed"
SLASHDOT_URL = "https://slashdot.org/"
TECHCRUNCH_URL = "https://techcrunch.com/"

# Aliases served by another source unless sources.yaml says otherwise
DEFAULT_ALIASES = {"hn": "hackernews"}


def _entry_value(entry, field: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    if isinstance(entry, dict):
        return entry.get(field)
    return getattr(entry, field, None)


def _entry_date_ms(entry) -> Optional[int]:
    for field in ("published_parsed", "updated_parsed"):
        value = struct_time_to_ms(_entry_value(entry, field))
        if value:
            return value
    return date_string_to_ms(_entry_value(entry, "published") or _entry_value(entry, "updated"))


# Parsers

def parse_hackernews(html: str) -> List[Dict[str, Any]]:
    """Parse a Hacker News listing page; items link to the discussion page."""
    soup = BeautifulSoup(html, "html.parser")
    items = []
    for row in soup.select(".athing"):
        story_id = row.get("id")
        link = row.select_one(".titleline a")
        if not story_id or link is None:
            continue
        score = soup.find(id=f"score_{story_id}")
        item = make_item(
            story_id,
            link.get_text(),
            f"{HACKERNEWS_URL}/item?id={story_id}",
            info=score.get_text(strip=True) if score else None,
        )
        if item:
            items.append(item)
    return items


def parse_reddit(data: Any) -> Dict[str, Any]:
    """Parse a reddit listing into ``{"items": [...], "next_cursor": after}``."""
    listing = data.get("data") if isinstance(data, dict) else None
    listing = listing or {}
    items = []
    for child in listing.get("children") or []:
        post = (child or {}).get("data") or {}
        item = make_item(
            post.get("id"),
            post.get("title"),
            f"{REDDIT_URL}{post['permalink']}" if post.get("permalink") else None,
            pub_date=int(post["created_utc"] * 1000) if post.get("created_utc") else None,
            info=f"↑ {post['score']}" if post.get("score") is not None else None,
            hover=post.get("subreddit_name_prefixed"),
        )
        if item:
            items.append(item)
    return {"items": items, "next_cursor": listing.get("after")}


def parse_lobsters(data: Any) -> List[Dict[str, Any]]:
    items = []
    for story in (data if isinstance(data, list) else [])[:PAGE_SIZE]:
        tags = story.get("tags") or []
        item = make_item(
            story.get("short_id"),
            story.get("title"),
            story.get("comments_url"),
            pub_date=date_string_to_ms(story.get("created_at")),
            info=f"{story['score']} pts" if story.get("score") is not None else None,
            hover=", ".join(tags) if tags else None,
        )
        if item:
            items.append(item)
    return items


def _first_paragraph(html: Optional[str]) -> str:
    if not html:
        return ""
    paragraph = BeautifulSoup(html, "html.parser").find("p")
    return paragraph.get_text(strip=True) if paragraph else ""


def parse_producthunt(entries: List[Any]) -> List[Dict[str, Any]]:
    """Map Product Hunt feed entries, appending the tagline to the product name."""
    items = []
    for entry in entries:
        content = _entry_value(entry, "content")
        html = content[0].get("value") if content else _entry_value(entry, "summary")
        tagline = _first_paragraph(html)
        title = _entry_value(entry, "title") or ""
        item = make_item(
            _entry_value(entry, "id") or _entry_value(entry, "link"),
            f"{title}: {tagline}" if tagline and title else title,
            _entry_value(entry, "link"),
            pub_date=_entry_date_ms(entry),
        )
        if item:
            items.append(item)
    return items


def _absolute(href: str, base: str) -> str:
    if href.startswith("//"):
        return f"https:{href}"
    if href.startswith("http"):
        return href
    return f"{base.rstrip('/')}/{href.lstrip('/')}"


def parse_slashdot(html: str) -> List[Dict[str, Any]]:
    soup = BeautifulSoup(html, "html.parser")
    items = []
    for article in soup.select("article.fhitem"):
        link = article.select_one(".story-title a")
        if link is None or not link.get("href"):
            continue
        href = link["href"]
        item = make_item(
            article.get("data-fhid") or href,
            link.get_text(),
            _absolute(href, SLASHDOT_URL),
        )
        if item:
            items.append(item)
    return items[:PAGE_SIZE]


def parse_techcrunch(html: str) -> List[Dict[str, Any]]:
    """Parse the TechCrunch front page; ids are the article slug."""
    soup = BeautifulSoup(html, "html.parser")
    items = []
    for link in soup.select(".loop-card__title a, .post-block__title a"):
        title = link.get_text(strip=True)
        href = link.get("href")
        if not href or len(title) <= 5:
            continue
        slug = [part for part in href.split("/") if part]
        item = make_item(slug[-1] if slug else href, title, href)
        if item:
            items.append(item)
    return dedupe_by_id(items)[:PAGE_SIZE]


def parse_rss_entries(entries: List[Any], hidden_date: bool = False) -> List[Dict[str, Any]]:
    """Map generic feed entries; the link doubles as the item id."""
    items = []
    for entry in entries:
        link = _entry_value(entry, "link")
        item = make_item(
            link,
            _entry_value(entry, "title"),
            link,
            pub_date=None if hidden_date else _entry_date_ms(entry),
        )
        if item:
            items.append(item)
    return items


# Getters

def hackernews_getters(strategy: FetchStrategy):
    async def fetch_page(page: int, limit: int) -> Dict[str, Any]:
        url = HACKERNEWS_URL if page == 1 else f"{HACKERNEWS_URL}/news?p={page}"
        items = parse_hackernews(await strategy.fetch_text(url, source_id="hackernews"))
        return {"items": items, "has_more": bool(items)}

    async def getter() -> List[Dict[str, Any]]:
        return (await fetch_page(1, PAGE_SIZE))["items"]

    return getter, page_paginated(fetch_page, lambda item: item, default_limit=PAGE_SIZE)


def reddit_getters(strategy: FetchStrategy):
    async def fetch_listing(cursor: Optional[str], limit: int) -> Dict[str, Any]:
        url = f"{REDDIT_URL}/r/popular.json?limit={limit}"
        if cursor:
            url += f"&after={quote(cursor)}"
        data = await strategy.fetch_json(url, headers={"Accept": "application/json"}, source_id="reddit")
        return parse_reddit(data)

    async def getter() -> List[Dict[str, Any]]:
        return (await fetch_listing(None, PAGE_SIZE))["items"]

    return getter, cursor_paginated(fetch_listing, lambda item: item, default_limit=PAGE_SIZE)


def lobsters_getter(strategy: FetchStrategy) -> SourceGetter:
    async def getter() -> List[Dict[str, Any]]:
        return parse_lobsters(await strategy.fetch_json(LOBSTERS_URL, source_id="lobsters"))
    return getter


def producthunt_getter(strategy: FetchStrategy) -> SourceGetter:
    async def getter() -> List[Dict[str, Any]]:
        entries = await strategy.fetch_feed(PRODUCTHUNT_FEED, source_id="producthunt")
        items = parse_producthunt(entries)
        if not items:
            raise UpstreamFetchError("Cannot fetch ProductHunt feed", source_id="producthunt", url=PRODUCTHUNT_FEED)
        return items
    return getter


def slashdot_getter(strategy: FetchStrategy) -> SourceGetter:
    async def getter() -> List[Dict[str, Any]]:
        return parse_slashdot(await strategy.fetch_text(SLASHDOT_URL, source_id="slashdot"))
    return getter


def techcrunch_getter(strategy: FetchStrategy) -> SourceGetter:
    async def getter() -> List[Dict[str, Any]]:
        return parse_techcrunch(await strategy.fetch_text(TECHCRUNCH_URL, source_id="techcrunch"))
    return getter


def rss_source(strategy: FetchStrategy, url: str, source_id: Optional[str] = None, hidden_date: bool = False) -> SourceGetter:
    """Build a getter serving any RSS/Atom feed."""
    async def getter() -> List[Dict[str, Any]]:
        entries = await strategy.fetch_feed(url, source_id=source_id)
        return parse_rss_entries(entries, hidden_date=hidden_date)
    return getter


def _single(factory: Callable[[FetchStrategy], SourceGetter]):
    return lambda strategy: (factory(strategy), None)


# id -> (display name, home page, factory returning (getter, paginated getter))
BUILTIN_SOURCES: Dict[str, tuple] = {
    "hackernews": ("Hacker News", "https://news.ycombinator.com", hackernews_getters),
    "reddit": ("Reddit", "https://www.reddit.com", reddit_getters),
    "lobsters": ("Lobsters", "https://lobste.rs", _single(lobsters_getter)),
    "producthunt": ("Product Hunt", "https://www.producthunt.com", _single(producthunt_getter)),
    "slashdot": ("Slashdot", "https://slashdot.org", _single(slashdot_getter)),
    "techcrunch": ("TechCrunch", "https://techcrunch.com", _single(techcrunch_getter)),
}


def build_registry(strategy: Optional[FetchStrategy] = None) -> SourceRegistry:
    """Register built-in and configured sources with their refresh intervals."""
    strategy = strategy or create_strategy()
    registry = SourceRegistry()

    for source_id, (name, home, factory) in BUILTIN_SOURCES.items():
        settings = config.source_settings(source_id)
        if settings.get("disabled"):
            logger.info(f"Source {source_id} is disabled")
            continue
        getter, paginated = factory(strategy)
        registry.register(
            source_id,
            settings["interval_ms"],
            getter=getter,
            paginated_getter=paginated,
            name=settings.get("name") if source_id in config.SOURCES else name,
            home=settings.get("home") or home,
        )

    for source_id, settings in config.SOURCES.items():
        if source_id in registry or settings.get("disabled") or not settings.get("rss"):
            continue
        registry.register(
            source_id,
            settings["interval_ms"],
            getter=rss_source(strategy, settings["rss"], source_id=source_id, hidden_date=settings.get("hidden_date", False)),
            name=settings.get("name"),
            home=settings.get("home"),
        )

    aliases = dict(DEFAULT_ALIASES)
    aliases.update(config.aliases())
    for alias, target in aliases.items():
        if alias in registry:
            logger.warning(f"Ignoring redirect for {alias}: it is already a source")
            continue
        settings = config.source_settings(alias)
        if settings.get("disabled"):
            continue
        registry.register_alias(alias, target, settings["interval_ms"], name=settings.get("name"))

    logger.info(f"Registered {len(registry)} sources using {strategy.label} fetching")
    return registry
