"""
Unit tests for the cache storage backends.
"""

import httpx
import pytest
from fakeredis import aioredis as fakeredis_aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from unittest.mock import AsyncMock

from service_worker.app.caching.cache_storage import (
    CachedResponse,
    InMemoryCacheStorage,
    RedisCacheStorage,
    RedisCacheStore,
    create_cache_storage,
    is_shareable,
)
from shared.config import BaseConfig
from shared.errors import CacheStorageError


def entry(url, body=b"{}", status=200):
    return CachedResponse(url=url, status=status, headers=[("content-type", "application/json")], body=body)


@pytest.fixture(params=["memory", "redis"])
def storage(request):
    """Each test runs against both backends."""
    if request.param == "memory":
        return InMemoryCacheStorage()
    return RedisCacheStorage(fakeredis_aioredis.FakeRedis(), namespace="test")


class TestCachedResponse:
    """Test cases for CachedResponse."""

    def test_from_response_drops_wire_and_cookie_headers(self):
        """Test encoding, length and cookie headers are not stored."""
        response = httpx.Response(
            200,
            headers=[
                ("Content-Type", "text/css"),
                ("Content-Encoding", "identity"),
                ("Content-Length", "6"),
                ("Set-Cookie", "a=1"),
                ("Set-Cookie", "b=2"),
            ],
            content=b"body{}",
        )

        cached = CachedResponse.from_response("https://app.pratibha.test/css/style.css", response)

        names = [name.lower() for name, _ in cached.headers]
        assert "content-encoding" not in names
        assert "content-length" not in names
        assert "set-cookie" not in names
        assert names == ["content-type"]
        assert cached.body == b"body{}"

    def test_to_response_drops_cookies_from_older_entries(self):
        """Test cookies already sitting in a store are never replayed."""
        cached = CachedResponse(
            url="https://app.pratibha.test/api/products",
            status=200,
            headers=[("content-type", "application/json"), ("set-cookie", "csrf_token=tok-a; Path=/")],
            body=b"{}",
        )

        response = cached.to_response()

        assert "set-cookie" not in response.headers
        assert response.headers["content-type"] == "application/json"

    @pytest.mark.parametrize("cache_control,expected", [
        ("", True),
        ("public, max-age=300", True),
        ("private", False),
        ("no-store", False),
        ("private, max-age=0", False),
        ("max-age=0, No-Store", False),
    ])
    def test_is_shareable(self, cache_control, expected):
        """Test per-user and non-storable responses are recognised."""
        headers = {"Cache-Control": cache_control} if cache_control else {}
        response = httpx.Response(200, headers=headers, json={})

        assert is_shareable(response) is expected

    def test_to_response_restores_status_headers_and_body(self):
        """Test a stored entry is replayed verbatim."""
        cached = entry("https://app.pratibha.test/api/products", body=b'{"success":true}')

        response = cached.to_response()

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"
        assert response.json() == {"success": True}

    def test_json_encoding_keeps_binary_bodies(self):
        """Test serialized entries survive non-UTF-8 content."""
        cached = CachedResponse(
            url="https://app.pratibha.test/assets/logo-77aa.png",
            status=200,
            headers=[("content-type", "image/png")],
            body=b"\x89PNG\r\n\x1a\n\x00\xff",
        )

        restored = CachedResponse.from_json(cached.to_json())

        assert restored == cached


class TestCacheStorage:
    """Test cases shared by the in-memory and Redis backends."""

    @pytest.mark.asyncio
    async def test_open_creates_store(self, storage):
        """Test opening a store registers its name."""
        assert await storage.has("pratibha-v37") is False

        await storage.open("pratibha-v37")

        assert await storage.has("pratibha-v37") is True
        assert await storage.keys() == ["pratibha-v37"]

    @pytest.mark.asyncio
    async def test_put_and_match(self, storage):
        """Test a stored response is found by URL."""
        store = await storage.open("pratibha-api-v1")
        await store.put(entry("https://app.pratibha.test/api/products", body=b'{"data":[]}'))

        found = await store.match("https://app.pratibha.test/api/products")

        assert found is not None
        assert found.body == b'{"data":[]}'
        assert await store.match("https://app.pratibha.test/api/market-rates") is None

    @pytest.mark.asyncio
    async def test_keys_in_insertion_order_and_restore_moves_to_end(self, storage):
        """Test re-storing a URL makes it the newest entry."""
        store = await storage.open("pratibha-api-v1")
        for name in ("a", "b", "c"):
            await store.put(entry(f"https://app.pratibha.test/api/products?page={name}"))

        await store.put(entry("https://app.pratibha.test/api/products?page=a", body=b'{"v":2}'))

        assert await store.keys() == [
            "https://app.pratibha.test/api/products?page=b",
            "https://app.pratibha.test/api/products?page=c",
            "https://app.pratibha.test/api/products?page=a",
        ]
        latest = await store.match("https://app.pratibha.test/api/products?page=a")
        assert latest.body == b'{"v":2}'

    @pytest.mark.asyncio
    async def test_delete_entry(self, storage):
        """Test deleting an entry removes it from keys and lookups."""
        store = await storage.open("pratibha-v37")
        await store.put(entry("https://app.pratibha.test/js/app.js"))

        assert await store.delete("https://app.pratibha.test/js/app.js") is True
        assert await store.delete("https://app.pratibha.test/js/app.js") is False
        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_delete_store_drops_entries(self, storage):
        """Test deleting a store removes it and everything in it."""
        store = await storage.open("pratibha-v36")
        await store.put(entry("https://app.pratibha.test/js/app.js"))
        await storage.open("pratibha-v37")

        assert await storage.delete("pratibha-v36") is True
        assert await storage.keys() == ["pratibha-v37"]

        reopened = await storage.open("pratibha-v36")
        assert await reopened.keys() == []


class TestRedisBackend:
    """Test cases specific to the Redis backend."""

    @pytest.mark.asyncio
    async def test_redis_errors_become_cache_storage_errors(self):
        """Test backend failures surface as CacheStorageError."""
        client = AsyncMock()
        client.hget.side_effect = RedisConnectionError("connection refused")
        failing = RedisCacheStore(client, "pratibha-v37", "test")

        with pytest.raises(CacheStorageError) as exc_info:
            await failing.match("https://app.pratibha.test/js/app.js")

        assert exc_info.value.code == "CACHE_STORAGE_ERROR"
        assert exc_info.value.details["store"] == "pratibha-v37"

    def test_create_cache_storage_selects_backend(self):
        """Test the configured backend is built."""
        assert isinstance(create_cache_storage(BaseConfig(cache_backend="memory")), InMemoryCacheStorage)
        assert isinstance(
            create_cache_storage(BaseConfig(cache_backend="redis", redis_url="redis://localhost:6379/9")),
            RedisCacheStorage,
        )

        with pytest.raises(ValueError):
            create_cache_storage(BaseConfig(cache_backend="sqlite"))
