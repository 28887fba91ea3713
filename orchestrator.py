#!/usr/bin/env python3
"""
Request-level fetch orchestration.

For each request the orchestrator resolves the source id, then picks one of:

- fresh cache: the entry is younger than the source's refresh interval
  (status "success", timestamped now)
- acceptable stale cache: younger than the global TTL, and the caller either
  did not ask for the latest data or is not entitled to force a refresh
  (status "cache", timestamped with the entry's update time)
- a live fetch, plain or filtered-with-pagination (status "success")

If the live fetch fails and a cache entry was read, that entry is served
instead, however old. Requests with filters against a paginatable source never
touch the cache, so pagination can collect enough matching items and the
filtered result never lands in the cache.
"""

from typing import Any, Callable, Dict, List, Optional

from cache import CacheEntry, now_ms
from config import config, get_logger
from errors import CacheUnavailableError, NoGetterError
from filters import FilterRule, apply_filters, rules_for_source
from pagination import fetch_with_filter
from registry import SourceDescriptor, SourceRegistry
from telemetry import trace_span

logger = get_logger("orchestrator")

STATUS_SUCCESS = "success"
STATUS_CACHE = "cache"


class SourceResponse:
    """Response body for one source request."""

    __slots__ = ("status", "id", "updated_time", "items")

    def __init__(self, status: str, id: str, updated_time: int, items: List[Dict[str, Any]]):
        self.status = status
        self.id = id
        self.updated_time = updated_time
        self.items = items

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "id": self.id,
            "updatedTime": self.updated_time,
            "items": self.items,
        }


class FetchOutcome:
    """Result of the live fetch step: either items or the error that stopped it."""

    __slots__ = ("items", "cacheable", "error")

    def __init__(self, items: Optional[List[Dict[str, Any]]] = None, cacheable: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None):
        self.items = items
        self.cacheable = cacheable
        self.error = error

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, items: List[Dict[str, Any]], cacheable: Optional[List[Dict[str, Any]]] = None) -> "FetchOutcome":
        return cls(items=items, cacheable=cacheable)

    @classmethod
    def failure(cls, error: Exception) -> "FetchOutcome":
        return cls(error=error)


# Callable that schedules fn(*args) to run after the response is sent
Deferrer = Callable[..., Any]


class FetchOrchestrator:
    """Decides between cache and upstream for each source request."""

    def __init__(
        self,
        registry: SourceRegistry,
        cache=None,
        target_items: Optional[int] = None,
        max_pages: Optional[int] = None,
        cache_ttl_ms: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.target_items = target_items or config.TARGET_ITEMS
        self.max_pages = max_pages or config.MAX_PAGES
        self.cache_ttl_ms = cache_ttl_ms or config.CACHE_TTL_MS
        self.clock = clock

    @trace_span(
        "serve_source",
        tracer_name="orchestrator",
        attr_from_args=lambda self, source_id, rules=None, **kw: {
            "source.requested_id": source_id,
            "filter.rule_count": len(rules or []),
            "request.latest": bool(kw.get("latest")),
        },
    )
    async def serve(
        self,
        source_id: Optional[str],
        rules: Optional[List[FilterRule]] = None,
        latest: bool = False,
        eligible: bool = False,
        defer: Optional[Deferrer] = None,
    ) -> SourceResponse:
        """Serve one source request.

        Args:
            source_id: Requested id; one redirect hop is followed.
            rules: Parsed filter rules; only global rules and rules scoped to
                the resolved source id are applied.
            latest: The caller asked to bypass stale-but-acceptable cache.
            eligible: The caller is entitled to force a refresh with ``latest``.
            defer: Optional scheduler for the cache write (e.g. a background
                task queue); when absent the write is awaited inline.

        Raises:
            InvalidSourceError: unknown id after redirect resolution.
            Exception: whatever the upstream fetch raised, when no cache entry exists.
        """
        descriptor = self.registry.resolve(source_id)
        sid = descriptor.id
        active_rules = rules_for_source(rules or [], sid)
        has_filters = bool(active_rules)
        skip_cache = has_filters and descriptor.supports_pagination
        now = self.clock()

        entry: Optional[CacheEntry] = None
        if self.cache is not None and not skip_cache:
            entry = await self._read_cache(sid)
            if entry is not None:
                age = entry.age_ms(now)
                if age < descriptor.refresh_interval_ms:
                    logger.debug(f"Serving fresh cache for {sid} (age {age}ms)")
                    return SourceResponse(STATUS_SUCCESS, sid, now, self._cached_items(entry, active_rules))
                if age < self.cache_ttl_ms and (not latest or not eligible):
                    logger.debug(f"Serving stale cache for {sid} (age {age}ms)")
                    return SourceResponse(STATUS_CACHE, sid, entry.updated_at, self._cached_items(entry, active_rules))
        elif skip_cache:
            logger.debug(f"Skipping cache for filtered request on paginatable source {sid}")

        outcome = await self._fetch(descriptor, active_rules)
        if not outcome.ok:
            if entry is not None:
                logger.warning(f"Fetch for {sid} failed ({outcome.error}); serving cache from {entry.updated_at}")
                return SourceResponse(STATUS_CACHE, sid, entry.updated_at, self._cached_items(entry, active_rules))
            raise outcome.error

        if self.cache is not None and outcome.cacheable:
            if defer is not None:
                defer(self._write_cache, sid, outcome.cacheable)
            else:
                await self._write_cache(sid, outcome.cacheable)

        logger.info(f"fetch {sid} latest{' (filtered)' if has_filters else ''}")
        return SourceResponse(STATUS_SUCCESS, sid, now, outcome.items)

    def _cached_items(self, entry: CacheEntry, rules: List[FilterRule]) -> List[Dict[str, Any]]:
        items = apply_filters(entry.items, rules) if rules else entry.items
        return items[:self.target_items]

    async def _read_cache(self, source_id: str) -> Optional[CacheEntry]:
        try:
            return await self.cache.get(source_id)
        except CacheUnavailableError as e:
            logger.warning(f"Cache read failed for {source_id}, treating as absent: {e}")
            return None

    async def _write_cache(self, source_id: str, items: List[Dict[str, Any]]) -> None:
        try:
            await self.cache.set(source_id, items)
            logger.debug(f"Cached {len(items)} items for {source_id}")
        except CacheUnavailableError as e:
            logger.warning(f"Cache write failed for {source_id}: {e}")

    async def _fetch(self, descriptor: SourceDescriptor, rules: List[FilterRule]) -> FetchOutcome:
        """Run the live fetch, capturing any failure in the outcome.

        Only unfiltered item sets are offered for caching: the plain fetch, or
        the single page fetched for a filtered request on a source without
        pagination. Paginated filtered runs are never cached.
        """
        sid = descriptor.id
        try:
            if rules:
                result = await fetch_with_filter(
                    self.registry, sid, rules, target=self.target_items, max_pages=self.max_pages
                )
                cacheable = None if result.from_pagination else result.unfiltered
                return FetchOutcome.success(result.items, cacheable=cacheable)
            items = (await self._plain_fetch(sid))[:self.target_items]
            return FetchOutcome.success(items, cacheable=items)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Fetch failed for {sid}: {e}")
            return FetchOutcome.failure(e)

    async def _plain_fetch(self, source_id: str) -> List[Dict[str, Any]]:
        getter = self.registry.getter(source_id)
        if getter is not None:
            return await getter()
        paginated = self.registry.paginated_getter(source_id)
        if paginated is not None:
            return (await paginated(None)).items
        raise NoGetterError(source_id)
