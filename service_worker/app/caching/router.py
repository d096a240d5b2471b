"""
Edge worker lifecycle and request interception.

A worker is installed, activated and eventually superseded by the next
deployment's worker. Only an active worker intercepts requests; anything
it declines goes straight to the network.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING
from urllib.parse import urljoin

import httpx

from shared.config import BaseConfig
from shared.errors import PrecacheError
from shared.logging import get_logger, set_session_context
from .cache_storage import CacheStorage
from .messages import ControlCommand, decode_command
from .routing import DEFAULT_POLICY, RoutingPolicy, Strategy, select_strategy
from .strategies import CacheStrategies, FetchRequest, Fetcher

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class WorkerState(str, Enum):
    INSTALLING = "installing"
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class ServiceWorkerRouter:
    """One deployed version of the edge cache worker."""

    def __init__(
        self,
        storage: CacheStorage,
        fetch: Fetcher,
        *,
        origin: str,
        asset_cache_name: str,
        api_cache_name: str,
        max_api_entries: int = 50,
        precache_urls: Sequence[str] = (),
        precache_strict: bool = False,
        policy: RoutingPolicy = DEFAULT_POLICY,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.storage = storage
        self.origin = origin.rstrip("/")
        self.asset_cache_name = asset_cache_name
        self.api_cache_name = api_cache_name
        self.precache_urls = list(precache_urls)
        self.precache_strict = precache_strict
        self.policy = policy
        self.state = WorkerState.INSTALLING
        self.clients_claimed = False
        self.logger = get_logger("worker.router")
        self.strategies = CacheStrategies(
            storage,
            fetch,
            asset_cache_name=asset_cache_name,
            api_cache_name=api_cache_name,
            max_api_entries=max_api_entries,
            policy=policy,
            metrics=metrics,
        )

    @classmethod
    def from_config(
        cls,
        config: BaseConfig,
        storage: CacheStorage,
        fetch: Fetcher,
        *,
        origin: str,
        metrics: Optional["MetricsCollector"] = None,
    ) -> "ServiceWorkerRouter":
        return cls(
            storage,
            fetch,
            origin=origin,
            asset_cache_name=config.asset_cache_name,
            api_cache_name=config.api_cache_name,
            max_api_entries=config.max_api_cache_entries,
            precache_urls=config.precache_urls,
            precache_strict=config.precache_strict,
            metrics=metrics,
        )

    @property
    def version(self) -> str:
        return self.asset_cache_name

    async def install(self) -> None:
        """Precache (when configured), then skip waiting and activate.

        In strict mode a failed precache raises ``PrecacheError`` and the
        worker stays installing.
        """
        self.logger.info("Installing worker", version=self.version)
        if self.precache_urls:
            requests = [FetchRequest("GET", urljoin(self.origin + "/", url)) for url in self.precache_urls]
            try:
                stored = await self.strategies.precache(requests, strict=self.precache_strict)
            except PrecacheError as e:
                self.logger.error("Install failed", version=self.version, failed=e.details["failed"])
                raise
            self.logger.info("Precached assets", stored=stored, requested=len(requests))
        await self.activate()

    async def activate(self) -> List[str]:
        """Delete stores from older deployments and take control of clients."""
        current = {self.asset_cache_name, self.api_cache_name}
        deleted = []
        for name in await self.storage.keys():
            if name not in current:
                await self.storage.delete(name)
                deleted.append(name)
                self.logger.info("Deleting old cache", store=name)

        self.clients_claimed = True
        self.state = WorkerState.ACTIVE
        set_session_context(worker_version=self.version)
        self.logger.info("Worker activated", version=self.version, deleted_stores=deleted)
        return deleted

    def supersede(self) -> None:
        self.state = WorkerState.SUPERSEDED
        self.clients_claimed = False
        self.logger.info("Worker superseded", version=self.version)

    async def handle_fetch(self, request: FetchRequest) -> Optional[httpx.Response]:
        """Answer ``request`` or return None to let it go to the network untouched."""
        if self.state is not WorkerState.ACTIVE:
            return None

        strategy = select_strategy(
            request.method,
            request.url,
            origin=self.origin,
            mode=request.mode,
            policy=self.policy,
        )
        if strategy is Strategy.PASSTHROUGH:
            return None

        return await self.strategies.handle(strategy, request)

    async def handle_message(self, raw: Any) -> ControlCommand:
        """Apply a control message from a page.

        Raises:
            UnknownControlMessageError: if ``raw`` is not a known command.
        """
        command = decode_command(raw)
        self.logger.info("Control message received", command=command.value)

        if command is ControlCommand.SKIP_WAITING:
            if self.state is WorkerState.INSTALLING:
                await self.activate()
        else:
            # Cached API data may belong to the previous user
            await self.clear_all()
        return command

    async def clear_all(self) -> List[str]:
        names = await self.storage.keys()
        for name in names:
            await self.storage.delete(name)
        self.logger.info("All caches cleared", stores=names)
        return names

    async def status(self) -> Dict[str, Any]:
        stores = {}
        for name in await self.storage.keys():
            store = await self.storage.open(name)
            stores[name] = len(await store.keys())
        return {
            "state": self.state.value,
            "version": self.version,
            "clients_claimed": self.clients_claimed,
            "stores": stores,
        }

    async def close(self) -> None:
        await self.strategies.drain()


class WorkerRegistration:
    """Tracks which worker version controls the page."""

    def __init__(self):
        self.active: Optional[ServiceWorkerRouter] = None
        self.logger = get_logger("worker.registration")

    async def register(self, worker: ServiceWorkerRouter) -> ServiceWorkerRouter:
        await worker.install()
        previous, self.active = self.active, worker
        if previous is not None and previous is not worker:
            previous.supersede()
            await previous.close()
        self.logger.info(
            "Worker registered",
            version=worker.version,
            previous=previous.version if previous else None,
        )
        return worker
