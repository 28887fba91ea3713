#!/usr/bin/env python3
"""
Paginated source access and the filtered pagination loop.

Every source is presented to the gateway as a paginated getter: an async
callable taking an optional cursor (``{"page": n}``, ``{"offset": n}`` or
``{"cursor": "..."}``) and returning a PaginatedPage. Sources without real
pagination are wrapped so they return a single page with ``has_more=False``.

fetch_with_filter() walks pages of a paginatable source, filtering each one,
until it has collected enough matching items or runs out of page budget.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import config, get_logger
from errors import NoGetterError
from filters import FilterRule, apply_filters, enabled_rules
from registry import PaginatedGetter, SourceGetter, SourceRegistry
from telemetry import trace_span

logger = get_logger("pagination")


class PaginatedPage:
    """One page of items plus at most one continuation field."""

    __slots__ = ("items", "has_more", "next_page", "next_offset", "next_cursor")

    def __init__(
        self,
        items: List[Dict[str, Any]],
        has_more: bool = False,
        next_page: Optional[int] = None,
        next_offset: Optional[int] = None,
        next_cursor: Optional[str] = None,
    ):
        self.items = items
        self.has_more = has_more
        self.next_page = next_page
        self.next_offset = next_offset
        self.next_cursor = next_cursor

    def next_params(self) -> Optional[Dict[str, Any]]:
        """Cursor for the following page: page, then offset, then cursor; None at the end."""
        if self.next_page is not None:
            return {"page": self.next_page}
        if self.next_offset is not None:
            return {"offset": self.next_offset}
        if self.next_cursor is not None:
            return {"cursor": self.next_cursor}
        return None

    def __repr__(self) -> str:
        return f"PaginatedPage({len(self.items)} items, has_more={self.has_more}, next={self.next_params()})"


class FilteredResult:
    """Outcome of fetch_with_filter."""

    __slots__ = ("items", "from_pagination", "pages", "unfiltered")

    def __init__(
        self,
        items: List[Dict[str, Any]],
        from_pagination: bool,
        pages: int = 1,
        unfiltered: Optional[List[Dict[str, Any]]] = None,
    ):
        self.items = items
        self.from_pagination = from_pagination
        self.pages = pages
        # Single-fetch path only: the page as fetched, truncated to the target
        self.unfiltered = unfiltered


def wrap_as_non_paginated(getter: SourceGetter) -> PaginatedGetter:
    """Present a plain getter as a paginated one that always returns a single final page."""

    async def _paginated(params: Optional[Dict[str, Any]] = None) -> PaginatedPage:
        items = await getter()
        return PaginatedPage(items, has_more=False)

    return _paginated


Mapper = Callable[[Any], Optional[Dict[str, Any]]]


def _map_items(raw_items: List[Any], mapper: Mapper) -> List[Dict[str, Any]]:
    items = []
    for raw in raw_items:
        item = mapper(raw)
        if item is not None:
            items.append(item)
    return items


def page_paginated(
    fetcher: Callable[[int, int], Awaitable[Dict[str, Any]]],
    mapper: Mapper,
    default_limit: int = 30,
    first_page: int = 1,
) -> PaginatedGetter:
    """Build a paginated getter over a page-numbered API.

    ``fetcher(page, limit)`` returns ``{"items": [...], "has_more"?: bool}``.
    When ``has_more`` is absent, a full page means there may be more.
    """

    async def _paginated(params: Optional[Dict[str, Any]] = None) -> PaginatedPage:
        params = params or {}
        page = params.get("page", first_page)
        limit = params.get("limit", default_limit)
        result = await fetcher(page, limit)
        raw_items = result.get("items") or []
        items = _map_items(raw_items, mapper)
        has_more = result.get("has_more")
        if has_more is None:
            has_more = len(raw_items) >= limit
        return PaginatedPage(items, has_more=has_more, next_page=page + 1 if has_more else None)

    return _paginated


def offset_paginated(
    fetcher: Callable[[int, int], Awaitable[Dict[str, Any]]],
    mapper: Mapper,
    default_limit: int = 30,
) -> PaginatedGetter:
    """Build a paginated getter over an offset/limit API (see page_paginated)."""

    async def _paginated(params: Optional[Dict[str, Any]] = None) -> PaginatedPage:
        params = params or {}
        offset = params.get("offset", 0)
        limit = params.get("limit", default_limit)
        result = await fetcher(offset, limit)
        raw_items = result.get("items") or []
        items = _map_items(raw_items, mapper)
        has_more = result.get("has_more")
        if has_more is None:
            has_more = len(raw_items) >= limit
        return PaginatedPage(items, has_more=has_more, next_offset=offset + limit if has_more else None)

    return _paginated


def cursor_paginated(
    fetcher: Callable[[Optional[str], int], Awaitable[Dict[str, Any]]],
    mapper: Mapper,
    default_limit: int = 30,
) -> PaginatedGetter:
    """Build a paginated getter over a cursor API.

    ``fetcher(cursor, limit)`` returns ``{"items": [...], "next_cursor"?: str}``;
    there are more pages exactly when a next cursor is returned.
    """

    async def _paginated(params: Optional[Dict[str, Any]] = None) -> PaginatedPage:
        params = params or {}
        cursor = params.get("cursor")
        limit = params.get("limit", default_limit)
        result = await fetcher(cursor, limit)
        items = _map_items(result.get("items") or [], mapper)
        next_cursor = result.get("next_cursor") or None
        return PaginatedPage(items, has_more=next_cursor is not None, next_cursor=next_cursor)

    return _paginated


def resolve_paginated_getter(registry: SourceRegistry, source_id: str) -> Optional[PaginatedGetter]:
    """The source's own paginated getter, else its plain getter wrapped as one page."""
    paginated = registry.paginated_getter(source_id)
    if paginated is not None:
        return paginated
    getter = registry.getter(source_id)
    if getter is not None:
        return wrap_as_non_paginated(getter)
    return None


@trace_span(
    "fetch_with_filter",
    tracer_name="pagination",
    attr_from_args=lambda registry, source_id, rules, **kw: {
        "source.id": source_id,
        "filter.rule_count": len(rules),
    },
)
async def fetch_with_filter(
    registry: SourceRegistry,
    source_id: str,
    rules: List[FilterRule],
    target: Optional[int] = None,
    max_pages: Optional[int] = None,
) -> FilteredResult:
    """Fetch a source's items with filters applied, paginating to reach ``target``.

    Sources without real pagination (or requests without rules) get one fetch,
    filtered and truncated; ``from_pagination`` is then False. Otherwise pages
    are fetched sequentially until ``target`` unique matching items are
    collected, ``max_pages`` requests were made, or the source reports no
    further page. Errors from any page abort the whole run.

    Raises:
        NoGetterError: when the source has no getter at all.
    """
    target = target or config.TARGET_ITEMS
    max_pages = max_pages or config.MAX_PAGES
    active_rules = enabled_rules(rules)

    paginated_getter = resolve_paginated_getter(registry, source_id)
    if paginated_getter is None:
        raise NoGetterError(source_id)

    if not active_rules or not registry.has_pagination_support(source_id):
        page = await paginated_getter(None)
        items = apply_filters(page.items, active_rules) if active_rules else page.items
        return FilteredResult(items[:target], from_pagination=False, pages=1, unfiltered=page.items[:target])

    collected: List[Dict[str, Any]] = []
    seen_ids = set()
    params: Optional[Dict[str, Any]] = None
    page_count = 0

    while len(collected) < target and page_count < max_pages:
        page = await paginated_getter(params)
        page_count += 1

        for item in apply_filters(page.items, active_rules):
            if item["id"] in seen_ids:
                continue
            seen_ids.add(item["id"])
            collected.append(item)
            if len(collected) >= target:
                break

        if not page.has_more:
            break
        params = page.next_params()
        if params is None:
            break

    logger.info(f"Filtered fetch for {source_id}: {page_count} pages, {len(collected)} items")
    return FilteredResult(collected, from_pagination=True, pages=page_count)
