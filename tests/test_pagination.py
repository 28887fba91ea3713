import pytest

from errors import NoGetterError
from filters import FilterRule
from items import make_item
from pagination import (
    PaginatedPage,
    cursor_paginated,
    fetch_with_filter,
    offset_paginated,
    page_paginated,
    wrap_as_non_paginated,
)
from registry import SourceRegistry


def _item(n, title=None):
    return make_item(str(n), title or f"story {n}", f"https://example.com/{n}")


class PagedSource:
    """Paginated getter over numbered pages; records every request."""

    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    async def __call__(self, params=None):
        params = params or {}
        self.calls.append(params)
        index = params.get("page", 1) - 1
        items = self.pages[index] if index < len(self.pages) else []
        has_more = index + 1 < len(self.pages)
        return PaginatedPage(items, has_more=has_more, next_page=index + 2 if has_more else None)


def _registry(paginated=None, getter=None):
    registry = SourceRegistry()
    registry.register("src", 60_000, getter=getter, paginated_getter=paginated)
    return registry


@pytest.mark.asyncio
async def test_wrap_as_non_paginated_returns_single_final_page():
    async def getter():
        return [_item(1), _item(2)]

    page = await wrap_as_non_paginated(getter)({"page": 3})
    assert [i["id"] for i in page.items] == ["1", "2"]
    assert page.has_more is False
    assert page.next_params() is None


def test_next_params_precedence():
    page = PaginatedPage([], has_more=True, next_page=2, next_offset=30, next_cursor="abc")
    assert page.next_params() == {"page": 2}
    page = PaginatedPage([], has_more=True, next_offset=30, next_cursor="abc")
    assert page.next_params() == {"offset": 30}
    page = PaginatedPage([], has_more=True, next_cursor="abc")
    assert page.next_params() == {"cursor": "abc"}


@pytest.mark.asyncio
async def test_filtered_loop_collects_until_target():
    pages = [[_item(p * 10 + i, "rust news" if i % 2 else "other") for i in range(10)] for p in range(5)]
    source = PagedSource(pages)
    rules = [FilterRule("rust", "include")]

    result = await fetch_with_filter(_registry(paginated=source), "src", rules, target=12, max_pages=5)

    assert result.from_pagination is True
    assert len(result.items) == 12
    assert result.pages == 3
    assert source.calls == [{}, {"page": 2}, {"page": 3}]
    assert all("rust" in i["title"] for i in result.items)


@pytest.mark.asyncio
async def test_filtered_loop_respects_page_budget():
    pages = [[_item(p * 10 + i) for i in range(10)] for p in range(10)]
    source = PagedSource(pages)
    rules = [FilterRule("nothing-matches", "include")]

    result = await fetch_with_filter(_registry(paginated=source), "src", rules, target=30, max_pages=5)

    assert result.items == []
    assert result.pages == 5
    assert len(source.calls) == 5


@pytest.mark.asyncio
async def test_filtered_loop_dedupes_across_pages():
    repeated = [_item(1, "rust a"), _item(2, "rust b")]
    source = PagedSource([repeated, repeated, [_item(3, "rust c")]])
    rules = [FilterRule("rust", "include")]

    result = await fetch_with_filter(_registry(paginated=source), "src", rules, target=30, max_pages=5)

    assert [i["id"] for i in result.items] == ["1", "2", "3"]
    assert result.pages == 3


@pytest.mark.asyncio
async def test_filtered_loop_stops_without_continuation():
    calls = []

    async def paginated(params=None):
        calls.append(params)
        return PaginatedPage([_item(1, "rust")], has_more=True)

    result = await fetch_with_filter(_registry(paginated=paginated), "src", [FilterRule("rust", "include")])
    assert len(calls) == 1
    assert [i["id"] for i in result.items] == ["1"]


@pytest.mark.asyncio
async def test_page_error_aborts_run():
    async def paginated(params=None):
        if params:
            raise RuntimeError("upstream down")
        return PaginatedPage([_item(1, "rust")], has_more=True, next_page=2)

    with pytest.raises(RuntimeError, match="upstream down"):
        await fetch_with_filter(_registry(paginated=paginated), "src", [FilterRule("rust", "include")])


@pytest.mark.asyncio
async def test_non_paginated_source_single_fetch_with_filters():
    calls = []

    async def getter():
        calls.append(1)
        return [_item(i, "rust" if i < 3 else "go") for i in range(40)]

    result = await fetch_with_filter(_registry(getter=getter), "src", [FilterRule("rust", "include")], target=30)

    assert result.from_pagination is False
    assert [i["id"] for i in result.items] == ["0", "1", "2"]
    assert len(result.unfiltered) == 30
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_no_rules_takes_single_page_even_when_paginated():
    source = PagedSource([[_item(i) for i in range(40)], [_item(100)]])

    result = await fetch_with_filter(_registry(paginated=source), "src", [], target=30)

    assert result.from_pagination is False
    assert len(result.items) == 30
    assert source.calls == [{}]


@pytest.mark.asyncio
async def test_missing_getter_raises():
    registry = SourceRegistry()
    registry.register("empty", 60_000)
    with pytest.raises(NoGetterError, match="No getter for source: empty"):
        await fetch_with_filter(registry, "empty", [FilterRule("x", "include")])


@pytest.mark.asyncio
async def test_page_paginated_helper_infers_has_more_from_page_size():
    requested = []

    async def fetcher(page, limit):
        requested.append((page, limit))
        return {"items": [{"n": i} for i in range(limit if page == 1 else 2)]}

    getter = page_paginated(fetcher, lambda raw: _item(raw["n"]), default_limit=5)
    first = await getter(None)
    assert len(first.items) == 5 and first.has_more and first.next_page == 2
    second = await getter({"page": 2})
    assert second.has_more is False and second.next_page is None
    assert requested == [(1, 5), (2, 5)]


@pytest.mark.asyncio
async def test_offset_paginated_helper_honours_explicit_has_more():
    async def fetcher(offset, limit):
        return {"items": [{"n": offset}], "has_more": offset < 20}

    getter = offset_paginated(fetcher, lambda raw: _item(raw["n"]), default_limit=10)
    page = await getter({"offset": 10})
    assert page.has_more is True and page.next_offset == 20
    page = await getter({"offset": 20})
    assert page.has_more is False and page.next_params() is None


@pytest.mark.asyncio
async def test_cursor_paginated_helper_drops_unmappable_items():
    async def fetcher(cursor, limit):
        if cursor is None:
            return {"items": [{"n": 1}, {"n": None}], "next_cursor": "t3_abc"}
        return {"items": [{"n": 2}]}

    getter = cursor_paginated(fetcher, lambda raw: _item(raw["n"]) if raw["n"] else None)
    first = await getter()
    assert [i["id"] for i in first.items] == ["1"]
    assert first.next_params() == {"cursor": "t3_abc"}
    last = await getter(first.next_params())
    assert last.has_more is False
