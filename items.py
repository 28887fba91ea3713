#!/usr/bin/env python3
"""
Content item helpers.

Items travel through the gateway as plain dicts so they serialize straight to
JSON for the cache and the HTTP response::

    {"id": "123", "title": "...", "url": "https://...",
     "pubDate": 1700000000000, "extra": {"info": "42 points", "hover": "r/python"}}

``id`` is the identity key within one source's result set.
"""

from typing import Any, Dict, List, Optional

MAX_TITLE_LENGTH = 500
MAX_URL_LENGTH = 2048


def make_item(
    item_id: Any,
    title: Optional[str],
    url: Optional[str],
    pub_date: Any = None,
    info: Optional[str] = None,
    hover: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Build a normalized content item, or None when id/title/url are missing."""
    title = (title or "").strip()
    url = (url or "").strip()
    if item_id is None or item_id == "" or not title or not url:
        return None
    item: Dict[str, Any] = {
        "id": item_id,
        "title": title[:MAX_TITLE_LENGTH],
        "url": url[:MAX_URL_LENGTH],
    }
    if pub_date is not None:
        item["pubDate"] = pub_date
    extra = {}
    if info:
        extra["info"] = info
    if hover:
        extra["hover"] = hover
    if extra:
        item["extra"] = extra
    return item


def item_text(item: Dict[str, Any]) -> str:
    """Return the lowercase text that filter patterns are matched against."""
    extra = item.get("extra") or {}
    hover = extra.get("hover") or ""
    return f"{item.get('title') or ''} {hover}".lower()


def dedupe_by_id(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Drop later items whose id was already seen, keeping order."""
    seen = set()
    unique = []
    for item in items:
        if item["id"] in seen:
            continue
        seen.add(item["id"])
        unique.append(item)
    return unique
