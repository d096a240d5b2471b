"""
Edge worker caching package.

Routing is a pure function of the request; strategies and the lifecycle
router own the cache stores. Nothing here is a module-level singleton:
build a ``ServiceWorkerRouter`` per deployment and register it.
"""

from .cache_storage import (
    CachedResponse,
    CacheStorage,
    CacheStore,
    InMemoryCacheStorage,
    RedisCacheStorage,
    create_cache_storage,
)
from .messages import ControlCommand, ControlMessage, decode_command
from .router import ServiceWorkerRouter, WorkerRegistration, WorkerState
from .routing import DEFAULT_POLICY, RoutingPolicy, Strategy, select_strategy
from .strategies import CacheStrategies, FetchRequest, HttpFetcher

__all__ = [
    "CachedResponse",
    "CacheStorage",
    "CacheStore",
    "InMemoryCacheStorage",
    "RedisCacheStorage",
    "create_cache_storage",
    "ControlCommand",
    "ControlMessage",
    "decode_command",
    "ServiceWorkerRouter",
    "WorkerRegistration",
    "WorkerState",
    "DEFAULT_POLICY",
    "RoutingPolicy",
    "Strategy",
    "select_strategy",
    "CacheStrategies",
    "FetchRequest",
    "HttpFetcher",
]
