import asyncio
import json

import pytest
from fastapi.testclient import TestClient

import server
from cache import CacheEntry, SqliteCache, now_ms
from config import config
from errors import CacheUnavailableError, UpstreamFetchError
from items import make_item
from orchestrator import FetchOrchestrator
from registry import SourceRegistry
from server import cache_state, create_app, is_latest_requested

NOW = 1_700_000_000_000


class MemoryCache:
    def __init__(self, entries=None):
        self.entries = dict(entries or {})
        self.writes = []

    async def get(self, source_id):
        return self.entries.get(source_id)

    async def set(self, source_id, items):
        self.writes.append((source_id, items))


def _items():
    return [
        make_item("1", "Rust in production", "https://example.com/1"),
        make_item("2", "Python packaging", "https://example.com/2"),
    ]


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def client(cache):
    async def getter():
        return _items()

    registry = SourceRegistry()
    registry.register("lobsters", 5 * 60_000, getter=getter, name="Lobsters")
    registry.register_alias("lob", "lobsters")
    orchestrator = FetchOrchestrator(registry, cache=cache, clock=lambda: NOW)
    with TestClient(create_app(orchestrator)) as test_client:
        yield test_client


def test_get_source_fetches_and_caches_in_background(client, cache):
    response = client.get("/api/s", params={"id": "lob"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["id"] == "lobsters"
    assert body["updatedTime"] == NOW
    assert [i["id"] for i in body["items"]] == ["1", "2"]
    assert cache.writes == [("lobsters", body["items"])]


def test_filter_param_is_applied(client):
    rules = json.dumps([{"pattern": "rust", "type": "include", "enabled": True}])
    response = client.get("/api/s", params={"id": "lobsters", "filter": rules})

    assert [i["id"] for i in response.json()["items"]] == ["1"]


def test_malformed_filter_is_ignored(client):
    response = client.get("/api/s", params={"id": "lobsters", "filter": "not-json"})

    assert response.status_code == 200
    assert len(response.json()["items"]) == 2


def test_unknown_source_returns_500_with_message(client):
    response = client.get("/api/s", params={"id": "doesnotexist"})

    assert response.status_code == 500
    assert response.json() == {"message": "Invalid source id"}


def test_missing_id_returns_500(client):
    response = client.get("/api/s")
    assert response.status_code == 500


def test_latest_requires_eligible_caller(client, cache, monkeypatch):
    cache.entries["lobsters"] = CacheEntry("lobsters", [make_item("old", "Old news", "https://example.com/old")], NOW - 20 * 60_000)
    monkeypatch.setattr(config, "DISABLE_LOGIN", False)
    monkeypatch.setattr(config, "API_TOKENS", {"secret"})

    anonymous = client.get("/api/s", params={"id": "lobsters", "latest": "true"}).json()
    assert anonymous["status"] == "cache"
    assert anonymous["items"][0]["id"] == "old"

    authorized = client.get(
        "/api/s",
        params={"id": "lobsters", "latest": ""},
        headers={"Authorization": "Bearer secret"},
    ).json()
    assert authorized["status"] == "success"
    assert [i["id"] for i in authorized["items"]] == ["1", "2"]


def test_latest_false_keeps_stale_cache(client, cache, monkeypatch):
    cache.entries["lobsters"] = CacheEntry("lobsters", _items(), NOW - 20 * 60_000)
    monkeypatch.setattr(config, "DISABLE_LOGIN", True)

    body = client.get("/api/s", params={"id": "lobsters", "latest": "false"}).json()
    assert body["status"] == "cache"


def test_latest_flag_parsing():
    assert is_latest_requested(None) is False
    assert is_latest_requested("false") is False
    assert is_latest_requested("") is True
    assert is_latest_requested("1") is True


def test_sources_and_health(client):
    sources = client.get("/api/sources").json()["sources"]
    assert [s["id"] for s in sources] == ["lob", "lobsters"]
    assert sources[0]["redirect"] == "lobsters"

    health = client.get("/api/health").json()
    assert health == {"status": "ok", "sources": 2, "cache": "ok"}


@pytest.mark.asyncio
async def test_cache_state_reports_unreachable_store():
    class BrokenCache:
        async def count(self):
            raise CacheUnavailableError("worker stopped")

    assert await cache_state(None) == "disabled"
    assert await cache_state(BrokenCache()) == "unavailable"


def test_startup_keeps_old_entries_for_fallback(tmp_path, monkeypatch):
    db_path = str(tmp_path / "cache.db")
    seeded_at = now_ms() - 2 * config.CACHE_TTL_MS

    async def seed():
        cache = SqliteCache(db_path)
        await cache.start()
        try:
            await cache.db.execute("set_entry", source_id="lobsters", data=json.dumps(_items()), updated=seeded_at)
        finally:
            await cache.close()

    asyncio.run(seed())

    async def unreachable():
        raise UpstreamFetchError("HTTP 503")

    registry = SourceRegistry()
    registry.register("lobsters", 5 * 60_000, getter=unreachable)
    monkeypatch.setenv("DISABLE_TELEMETRY", "true")
    monkeypatch.setattr(config, "DATABASE_PATH", db_path)
    monkeypatch.setattr(config, "DISABLE_CACHE", False)
    monkeypatch.setattr(server, "build_registry", lambda strategy: registry)

    with TestClient(create_app()) as test_client:
        response = test_client.get("/api/s", params={"id": "lobsters"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "cache"
    assert body["updatedTime"] == seeded_at
    assert [i["id"] for i in body["items"]] == ["1", "2"]


def test_scoped_query_rules_only_apply_to_their_source(client):
    rules = json.dumps([{"pattern": "rust", "type": "include", "scope": "reddit"}])
    response = client.get("/api/s", params={"id": "lobsters", "filter": rules})

    assert [i["id"] for i in response.json()["items"]] == ["1", "2"]
