"""
Caching strategies applied by the edge worker.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit

import httpx

from shared.errors import CacheStorageError, PrecacheError
from shared.logging import get_logger
from .cache_storage import CacheStorage, CachedResponse, is_shareable
from .routing import DEFAULT_POLICY, RoutingPolicy, Strategy

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector

OFFLINE_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Offline</title></head>
  <body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1>You're offline</h1>
    <p>Please check your internet connection and try again.</p>
    <button onclick="location.reload()">Retry</button>
  </body>
</html>
"""

ASSET_OFFLINE_TEXT = "Offline - Please check your connection"
API_OFFLINE_MESSAGE = "Data unavailable offline. Please connect to the internet."
API_NETWORK_MESSAGE = "Network unavailable. Please check your connection."

# Not forwarded upstream
HOP_BY_HOP_HEADERS = frozenset({
    "host", "connection", "keep-alive", "proxy-connection", "te", "trailer",
    "transfer-encoding", "upgrade", "content-length",
})


@dataclass(frozen=True)
class FetchRequest:
    """An intercepted request as seen by the worker."""

    method: str
    url: str
    mode: Optional[str] = None
    headers: Tuple[Tuple[str, str], ...] = ()
    body: bytes = b""

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"


Fetcher = Callable[[FetchRequest], Awaitable[httpx.Response]]


class HttpFetcher:
    """Network access for the worker.

    With ``upstream_origin`` set, the request's scheme and host are swapped
    for the upstream's before sending; cache keys keep the public URL.
    """

    def __init__(self, client: httpx.AsyncClient, upstream_origin: Optional[str] = None):
        self.client = client
        self.upstream_origin = upstream_origin

    def upstream_url(self, url: str) -> str:
        if not self.upstream_origin:
            return url
        parts = urlsplit(url)
        upstream = urlsplit(self.upstream_origin)
        return urlunsplit((upstream.scheme, upstream.netloc, parts.path, parts.query, ""))

    async def __call__(self, request: FetchRequest) -> httpx.Response:
        headers = [
            (name, value) for name, value in request.headers
            if name.lower() not in HOP_BY_HOP_HEADERS
        ]
        return await self.client.request(
            request.method,
            self.upstream_url(request.url),
            headers=headers,
            content=request.body or None,
        )


class CacheStrategies:
    """Document, immutable-asset, revalidate and API strategies over two stores."""

    def __init__(
        self,
        storage: CacheStorage,
        fetch: Fetcher,
        *,
        asset_cache_name: str,
        api_cache_name: str,
        max_api_entries: int = 50,
        policy: RoutingPolicy = DEFAULT_POLICY,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.storage = storage
        self.fetch = fetch
        self.asset_cache_name = asset_cache_name
        self.api_cache_name = api_cache_name
        self.max_api_entries = max_api_entries
        self.policy = policy
        self.metrics = metrics
        self.logger = get_logger("worker.strategies")
        self._background: Set["asyncio.Task[None]"] = set()
        self._handlers: Dict[Strategy, Callable[[FetchRequest], Awaitable[httpx.Response]]] = {
            Strategy.DOCUMENT: self.document,
            Strategy.IMMUTABLE_ASSET: self.immutable_asset,
            Strategy.REVALIDATE: self.revalidate,
            Strategy.API: self.api,
        }

    async def handle(self, strategy: Strategy, request: FetchRequest) -> httpx.Response:
        return await self._handlers[strategy](request)

    async def document(self, request: FetchRequest) -> httpx.Response:
        """Network first; cached copy, then an offline page, when the network is down."""
        try:
            response = await self.fetch(request)
        except httpx.RequestError as e:
            self.logger.info("Network failed for document, trying cache", url=request.url, error=str(e))
            cached = await self._match(self.asset_cache_name, request.url)
            if cached is not None:
                self._outcome(Strategy.DOCUMENT, "cache")
                return cached.to_response()
            self._outcome(Strategy.DOCUMENT, "offline")
            return httpx.Response(503, headers={"Content-Type": "text/html"}, text=OFFLINE_PAGE)

        if response.is_success:
            await self._store(self.asset_cache_name, request, response)
        self._outcome(Strategy.DOCUMENT, "network")
        return response

    async def immutable_asset(self, request: FetchRequest) -> httpx.Response:
        """Cache first. Hashed names change with content, so a hit is never stale."""
        cached = await self._match(self.asset_cache_name, request.url)
        if cached is not None:
            self._outcome(Strategy.IMMUTABLE_ASSET, "cache")
            return cached.to_response()

        try:
            response = await self.fetch(request)
        except httpx.RequestError as e:
            self.logger.warning("Hashed asset unavailable", url=request.url, error=str(e))
            self._outcome(Strategy.IMMUTABLE_ASSET, "offline")
            return httpx.Response(503)

        if response.is_success:
            await self._store(self.asset_cache_name, request, response)
        self._outcome(Strategy.IMMUTABLE_ASSET, "network")
        return response

    async def revalidate(self, request: FetchRequest) -> httpx.Response:
        """Stale-while-revalidate: answer from cache, refresh in the background."""
        cached = await self._match(self.asset_cache_name, request.url)
        if cached is not None:
            self._spawn(self._refresh(request))
            self._outcome(Strategy.REVALIDATE, "cache")
            return cached.to_response()

        try:
            response = await self.fetch(request)
        except httpx.RequestError as e:
            self.logger.warning("Static asset unavailable", url=request.url, error=str(e))
            self._outcome(Strategy.REVALIDATE, "offline")
            return httpx.Response(503, headers={"Content-Type": "text/plain"}, text=ASSET_OFFLINE_TEXT)

        if response.is_success:
            await self._store(self.asset_cache_name, request, response)
        self._outcome(Strategy.REVALIDATE, "network")
        return response

    async def api(self, request: FetchRequest) -> httpx.Response:
        """Network first; only allow-listed read endpoints fall back to the bounded API store."""
        if not self.policy.is_cacheable_api(request.path):
            try:
                response = await self.fetch(request)
            except httpx.RequestError as e:
                self.logger.info("Network failed for API request", url=request.url, error=str(e))
                self._outcome(Strategy.API, "offline")
                return httpx.Response(503, json={"success": False, "message": API_NETWORK_MESSAGE})
            self._outcome(Strategy.API, "network")
            return response

        try:
            response = await self.fetch(request)
        except httpx.RequestError as e:
            self.logger.info("Network failed, trying API cache", url=request.url, error=str(e))
            cached = await self._match(self.api_cache_name, request.url)
            if cached is not None:
                self._outcome(Strategy.API, "cache")
                return cached.to_response()
            self._outcome(Strategy.API, "offline")
            return httpx.Response(
                503,
                json={"success": False, "message": API_OFFLINE_MESSAGE, "offline": True},
            )

        if response.is_success and await self._store(self.api_cache_name, request, response):
            await self.trim_cache(self.api_cache_name, self.max_api_entries)
        self._outcome(Strategy.API, "network")
        return response

    async def trim_cache(self, store_name: str, max_items: int) -> int:
        """Delete the oldest-inserted entries beyond ``max_items``.

        Insertion order only; reads do not refresh an entry's position.
        """
        try:
            store = await self.storage.open(store_name)
            keys = await store.keys()
            excess = len(keys) - max_items
            if excess <= 0:
                return 0
            for url in keys[:excess]:
                await store.delete(url)
        except CacheStorageError as e:
            self.logger.warning("Cache trim failed", store=store_name, error=e.message)
            return 0

        self.logger.debug("Trimmed cache", store=store_name, evicted=excess, max_items=max_items)
        if self.metrics:
            self.metrics.increment_counter("cache_evictions_total", amount=excess, store=store_name)
        return excess

    async def precache(self, requests: Iterable[FetchRequest], *, strict: bool = False) -> int:
        """Fetch and store ``requests`` in the asset store; returns how many were stored.

        With ``strict`` any failed fetch raises ``PrecacheError`` and nothing is stored.
        """
        fetched: List[Tuple[FetchRequest, httpx.Response]] = []
        failed: List[str] = []
        for request in requests:
            try:
                response = await self.fetch(request)
            except httpx.RequestError as e:
                self.logger.warning("Precache fetch failed", url=request.url, error=str(e))
                failed.append(request.url)
                continue
            if not response.is_success:
                self.logger.warning("Precache fetch failed", url=request.url, status_code=response.status_code)
                failed.append(request.url)
                continue
            fetched.append((request, response))

        if strict and failed:
            raise PrecacheError(failed)

        stored = 0
        for request, response in fetched:
            if await self._store(self.asset_cache_name, request, response):
                stored += 1
        return stored

    async def drain(self) -> None:
        """Wait for background revalidations to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _refresh(self, request: FetchRequest) -> None:
        try:
            response = await self.fetch(request)
        except httpx.RequestError as e:
            self.logger.warning("Background cache update failed", url=request.url, error=str(e))
            return

        if not response.is_success:
            self.logger.warning(
                "Background cache update failed",
                url=request.url,
                status_code=response.status_code,
            )
            return

        await self._store(self.asset_cache_name, request, response)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _match(self, store_name: str, url: str) -> Optional[CachedResponse]:
        try:
            store = await self.storage.open(store_name)
            cached = await store.match(url)
        except CacheStorageError as e:
            self.logger.error("Cache read failed", store=store_name, url=url, error=e.message)
            cached = None

        if self.metrics:
            self.metrics.increment_counter(
                "cache_lookups_total",
                store=store_name,
                result="hit" if cached is not None else "miss",
            )
        return cached

    async def _store(self, store_name: str, request: FetchRequest, response: httpx.Response) -> bool:
        # Only GETs outside the never-cache routes are ever written
        if request.method.upper() != "GET" or self.policy.is_never_cached(request.path):
            return False
        if not is_shareable(response):
            self.logger.debug("Response not shareable, skipping cache", url=request.url)
            return False

        try:
            store = await self.storage.open(store_name)
            await store.put(CachedResponse.from_response(request.url, response))
        except CacheStorageError as e:
            self.logger.warning("Cache write failed", store=store_name, url=request.url, error=e.message)
            return False
        return True

    def _outcome(self, strategy: Strategy, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_strategy_total", strategy=strategy.value, outcome=outcome)
