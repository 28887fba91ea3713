import pytest

from errors import InvalidSourceError
from registry import SourceDescriptor, SourceRegistry


async def _getter():
    return []


async def _paginated(params=None):
    return None


def _registry():
    registry = SourceRegistry()
    registry.register("hackernews", 300_000, getter=_getter, paginated_getter=_paginated, name="Hacker News")
    registry.register("lobsters", 600_000, getter=_getter)
    registry.register("broken", 600_000)
    registry.register_alias("hn", "hackernews")
    registry.register_alias("ghost", "nowhere")
    registry.register_alias("hop1", "hn")
    return registry


def test_resolve_direct_and_alias():
    registry = _registry()
    assert registry.resolve("lobsters").id == "lobsters"
    hn = registry.resolve("hn")
    assert hn.id == "hackernews"
    assert hn.refresh_interval_ms == 300_000
    assert hn.supports_pagination is True


@pytest.mark.parametrize("source_id", [None, "", "doesnotexist", "ghost", "broken", "hop1"])
def test_resolve_rejects_unservable_ids(source_id):
    with pytest.raises(InvalidSourceError, match="Invalid source id"):
        _registry().resolve(source_id)


def test_pagination_support_follows_paginated_getter():
    registry = _registry()
    assert registry.has_pagination_support("hackernews")
    assert not registry.has_pagination_support("lobsters")
    assert registry.descriptor("lobsters").supports_pagination is False


def test_duplicate_registration_rejected():
    registry = _registry()
    with pytest.raises(ValueError):
        registry.register("lobsters", 1000, getter=_getter)
    with pytest.raises(ValueError):
        registry.register_alias("hackernews", "lobsters")


def test_descriptor_is_immutable():
    descriptor = SourceDescriptor("x", 1000)
    with pytest.raises(AttributeError):
        descriptor.refresh_interval_ms = 5


def test_listing():
    registry = _registry()
    assert registry.ids() == ["broken", "ghost", "hackernews", "hn", "hop1", "lobsters"]
    assert "hn" in registry and len(registry) == 6
    assert registry.descriptor("hackernews").to_dict() == {
        "id": "hackernews",
        "name": "Hacker News",
        "home": None,
        "interval": 300_000,
        "redirect": None,
        "pagination": True,
    }
