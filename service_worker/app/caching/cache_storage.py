"""
Named cache stores for the edge worker.

Mirrors the browser Cache Storage model: a storage holds named stores,
each store maps a request URL to a stored response, and ``keys()`` lists
entries in insertion order. Re-storing a URL moves it to the end.
"""

import base64
import json
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.config import BaseConfig
from shared.errors import CacheStorageError

# Wire encoding headers describe the body as sent, not the decoded body we keep.
# Cookies belong to the client that triggered the fetch; stores are shared.
STRIPPED_HEADERS = frozenset({
    "content-encoding", "content-length", "transfer-encoding", "connection",
    "set-cookie", "set-cookie2",
})


def _strip_headers(headers) -> List[Tuple[str, str]]:
    return [(name, value) for name, value in headers if name.lower() not in STRIPPED_HEADERS]


def is_shareable(response: httpx.Response) -> bool:
    """False when the origin marked the response as per-user or not storable."""
    directives = {
        part.strip().split("=", 1)[0].lower()
        for part in response.headers.get("cache-control", "").split(",")
    }
    return not directives & {"private", "no-store"}


@dataclass
class CachedResponse:
    """A stored GET response."""

    url: str
    status: int
    headers: List[Tuple[str, str]]
    body: bytes
    stored_at: float = field(default_factory=time.time)

    @classmethod
    def from_response(cls, url: str, response: httpx.Response) -> "CachedResponse":
        headers = _strip_headers(response.headers.multi_items())
        return cls(url=url, status=response.status_code, headers=headers, body=response.content)

    def to_response(self) -> httpx.Response:
        # Entries written by older releases may still hold cookies
        return httpx.Response(self.status, headers=_strip_headers(self.headers), content=self.body)

    def to_json(self) -> str:
        return json.dumps({
            "url": self.url,
            "status": self.status,
            "headers": self.headers,
            "body": base64.b64encode(self.body).decode("ascii"),
            "stored_at": self.stored_at,
        })

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "CachedResponse":
        data = json.loads(raw)
        return cls(
            url=data["url"],
            status=data["status"],
            headers=[(name, value) for name, value in data["headers"]],
            body=base64.b64decode(data["body"]),
            stored_at=data["stored_at"],
        )


class CacheStore(ABC):
    """One named store."""

    name: str

    @abstractmethod
    async def match(self, url: str) -> Optional[CachedResponse]:
        ...

    @abstractmethod
    async def put(self, entry: CachedResponse) -> None:
        ...

    @abstractmethod
    async def delete(self, url: str) -> bool:
        ...

    @abstractmethod
    async def keys(self) -> List[str]:
        """Stored URLs, oldest insertion first."""


class CacheStorage(ABC):
    """Registry of named stores."""

    @abstractmethod
    async def open(self, name: str) -> CacheStore:
        """Return the store, creating it if needed."""

    @abstractmethod
    async def has(self, name: str) -> bool:
        ...

    @abstractmethod
    async def keys(self) -> List[str]:
        """Store names in creation order."""

    @abstractmethod
    async def delete(self, name: str) -> bool:
        ...

    async def aclose(self) -> None:
        return None


class InMemoryCacheStore(CacheStore):

    def __init__(self, name: str):
        self.name = name
        self._entries: Dict[str, CachedResponse] = {}

    async def match(self, url: str) -> Optional[CachedResponse]:
        return self._entries.get(url)

    async def put(self, entry: CachedResponse) -> None:
        self._entries.pop(entry.url, None)
        self._entries[entry.url] = entry

    async def delete(self, url: str) -> bool:
        return self._entries.pop(url, None) is not None

    async def keys(self) -> List[str]:
        return list(self._entries)


class InMemoryCacheStorage(CacheStorage):
    """Process-local storage; the default backend."""

    def __init__(self):
        self._stores: Dict[str, InMemoryCacheStore] = {}

    async def open(self, name: str) -> CacheStore:
        store = self._stores.get(name)
        if store is None:
            store = self._stores[name] = InMemoryCacheStore(name)
        return store

    async def has(self, name: str) -> bool:
        return name in self._stores

    async def keys(self) -> List[str]:
        return list(self._stores)

    async def delete(self, name: str) -> bool:
        return self._stores.pop(name, None) is not None


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


@asynccontextmanager
async def _redis_errors(operation: str, **details: Any):
    try:
        yield
    except RedisError as e:
        raise CacheStorageError(f"Redis {operation} failed", {"error": str(e), **details}) from e


class RedisCacheStore(CacheStore):
    """Store backed by a hash of entries plus a sorted set of insertion sequence numbers."""

    def __init__(self, client: redis.Redis, name: str, namespace: str):
        self.client = client
        self.name = name
        self._entries_key = f"{namespace}:store:{name}:entries"
        self._order_key = f"{namespace}:store:{name}:order"
        self._seq_key = f"{namespace}:seq"

    async def match(self, url: str) -> Optional[CachedResponse]:
        async with _redis_errors("match", store=self.name, url=url):
            raw = await self.client.hget(self._entries_key, url)
        return CachedResponse.from_json(raw) if raw else None

    async def put(self, entry: CachedResponse) -> None:
        async with _redis_errors("put", store=self.name, url=entry.url):
            seq = await self.client.incr(self._seq_key)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._entries_key, entry.url, entry.to_json())
                pipe.zadd(self._order_key, {entry.url: seq})
                await pipe.execute()

    async def delete(self, url: str) -> bool:
        async with _redis_errors("delete", store=self.name, url=url):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hdel(self._entries_key, url)
                pipe.zrem(self._order_key, url)
                removed, _ = await pipe.execute()
        return bool(removed)

    async def keys(self) -> List[str]:
        async with _redis_errors("keys", store=self.name):
            members = await self.client.zrange(self._order_key, 0, -1)
        return [_text(member) for member in members]


class RedisCacheStorage(CacheStorage):
    """Storage shared by every edge worker process pointing at the same Redis."""

    def __init__(self, client: redis.Redis, namespace: str = "pratibha"):
        self.client = client
        self.namespace = namespace
        self._names_key = f"{namespace}:stores"
        self._seq_key = f"{namespace}:seq"

    async def open(self, name: str) -> CacheStore:
        async with _redis_errors("open", store=name):
            if await self.client.zscore(self._names_key, name) is None:
                seq = await self.client.incr(self._seq_key)
                await self.client.zadd(self._names_key, {name: seq}, nx=True)
        return RedisCacheStore(self.client, name, self.namespace)

    async def has(self, name: str) -> bool:
        async with _redis_errors("has", store=name):
            return await self.client.zscore(self._names_key, name) is not None

    async def keys(self) -> List[str]:
        async with _redis_errors("keys"):
            members = await self.client.zrange(self._names_key, 0, -1)
        return [_text(member) for member in members]

    async def delete(self, name: str) -> bool:
        store = RedisCacheStore(self.client, name, self.namespace)
        async with _redis_errors("delete", store=name):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.zrem(self._names_key, name)
                pipe.delete(store._entries_key, store._order_key)
                removed, _ = await pipe.execute()
        return bool(removed)

    async def aclose(self) -> None:
        await self.client.aclose()


def create_cache_storage(config: BaseConfig) -> CacheStorage:
    """Build the storage backend named by ``config.cache_backend``."""
    if config.cache_backend == "memory":
        return InMemoryCacheStorage()
    if config.cache_backend == "redis":
        return RedisCacheStorage(redis.from_url(config.redis_url), namespace=config.cache_prefix)
    raise ValueError(f"Unknown cache backend: {config.cache_backend}")
