#!/usr/bin/env python3
"""
Source registry.

Maps source ids to their descriptor (refresh interval, alias target,
pagination capability) and their getters. One registry is built at startup
(see sources.build_registry) and handed to the orchestrator.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import get_logger
from errors import InvalidSourceError

logger = get_logger("registry")

# () -> list of items
SourceGetter = Callable[[], Awaitable[List[Dict[str, Any]]]]
# (cursor or None) -> PaginatedPage
PaginatedGetter = Callable[[Optional[Dict[str, Any]]], Awaitable[Any]]


class SourceDescriptor:
    """Immutable description of a registered source."""

    __slots__ = ("id", "refresh_interval_ms", "redirects_to", "supports_pagination", "name", "home")

    def __init__(
        self,
        id: str,
        refresh_interval_ms: int,
        redirects_to: Optional[str] = None,
        supports_pagination: bool = False,
        name: Optional[str] = None,
        home: Optional[str] = None,
    ):
        object.__setattr__(self, "id", id)
        object.__setattr__(self, "refresh_interval_ms", int(refresh_interval_ms))
        object.__setattr__(self, "redirects_to", redirects_to)
        object.__setattr__(self, "supports_pagination", bool(supports_pagination))
        object.__setattr__(self, "name", name or id)
        object.__setattr__(self, "home", home)

    def __setattr__(self, key, value):
        raise AttributeError("SourceDescriptor is immutable")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "home": self.home,
            "interval": self.refresh_interval_ms,
            "redirect": self.redirects_to,
            "pagination": self.supports_pagination,
        }

    def __repr__(self) -> str:
        return f"SourceDescriptor({self.id!r}, interval={self.refresh_interval_ms}ms, pagination={self.supports_pagination})"


class SourceRegistry:
    """Holds descriptors and getters for every known source id."""

    def __init__(self) -> None:
        self._descriptors: Dict[str, SourceDescriptor] = {}
        self._getters: Dict[str, SourceGetter] = {}
        self._paginated: Dict[str, PaginatedGetter] = {}

    def register(
        self,
        source_id: str,
        refresh_interval_ms: int,
        getter: Optional[SourceGetter] = None,
        paginated_getter: Optional[PaginatedGetter] = None,
        name: Optional[str] = None,
        home: Optional[str] = None,
    ) -> SourceDescriptor:
        """Register a source with a plain getter, a paginated getter, or both.

        A source is paginatable exactly when it has a paginated getter.
        """
        if source_id in self._descriptors:
            raise ValueError(f"Source {source_id} is already registered")
        descriptor = SourceDescriptor(
            source_id,
            refresh_interval_ms,
            supports_pagination=paginated_getter is not None,
            name=name,
            home=home,
        )
        self._descriptors[source_id] = descriptor
        if getter is not None:
            self._getters[source_id] = getter
        if paginated_getter is not None:
            self._paginated[source_id] = paginated_getter
        logger.debug(f"Registered source {descriptor!r}")
        return descriptor

    def register_alias(self, alias: str, target: str, refresh_interval_ms: int = 0, name: Optional[str] = None) -> SourceDescriptor:
        """Register ``alias`` as a redirect to ``target``; the alias has no getter."""
        if alias in self._descriptors:
            raise ValueError(f"Source {alias} is already registered")
        descriptor = SourceDescriptor(alias, refresh_interval_ms, redirects_to=target, name=name)
        self._descriptors[alias] = descriptor
        return descriptor

    def descriptor(self, source_id: str) -> Optional[SourceDescriptor]:
        return self._descriptors.get(source_id)

    def getter(self, source_id: str) -> Optional[SourceGetter]:
        return self._getters.get(source_id)

    def paginated_getter(self, source_id: str) -> Optional[PaginatedGetter]:
        """Return the source's true paginated getter, if it has one."""
        return self._paginated.get(source_id)

    def has_pagination_support(self, source_id: str) -> bool:
        return source_id in self._paginated

    def is_servable(self, source_id: Optional[str]) -> bool:
        """A source is servable when it is registered and has some getter."""
        return bool(source_id) and source_id in self._descriptors and (
            source_id in self._getters or source_id in self._paginated
        )

    def resolve(self, source_id: Optional[str]) -> SourceDescriptor:
        """Resolve a requested id, following at most one redirect.

        Raises:
            InvalidSourceError: when neither the id nor its redirect target is servable.
        """
        if self.is_servable(source_id):
            return self._descriptors[source_id]
        descriptor = self._descriptors.get(source_id) if source_id else None
        if descriptor and descriptor.redirects_to:
            target = descriptor.redirects_to
            if self.is_servable(target):
                logger.debug(f"Source {source_id} redirects to {target}")
                return self._descriptors[target]
        raise InvalidSourceError(source_id)

    def ids(self) -> List[str]:
        return sorted(self._descriptors)

    def descriptors(self) -> List[SourceDescriptor]:
        return [self._descriptors[sid] for sid in self.ids()]

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)
