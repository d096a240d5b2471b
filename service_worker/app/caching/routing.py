"""
Strategy selection for intercepted requests.

``select_strategy`` is a pure function of the request's method, URL and
mode, so routing can be tested without a running worker.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlsplit


class Strategy(str, Enum):
    """How the worker answers a request."""

    PASSTHROUGH = "passthrough"
    DOCUMENT = "document"
    IMMUTABLE_ASSET = "immutable_asset"
    REVALIDATE = "revalidate"
    API = "api"


@dataclass(frozen=True)
class RoutingPolicy:
    """Path prefixes that drive routing and API cache eligibility."""

    api_prefix: str = "/api/"
    storage_prefix: str = "/storage/"
    hashed_asset_prefix: str = "/assets/"
    document_extension: str = ".html"
    # Read-only listings that may be answered from cache when offline
    cacheable_api_routes: Tuple[str, ...] = ("/api/products", "/api/market-rates")
    # Credential-bearing or mutating endpoints; never served from cache
    never_cache_routes: Tuple[str, ...] = (
        "/api/auth/",
        "/api/csrf-token",
        "/api/ledger/payment",
        "/api/reconciliation/",
    )

    def is_never_cached(self, path: str) -> bool:
        return path.startswith(self.never_cache_routes)

    def is_cacheable_api(self, path: str) -> bool:
        return path.startswith(self.cacheable_api_routes)

    def looks_like_document(self, path: str) -> bool:
        last_segment = path.rsplit("/", 1)[-1]
        return path.endswith(self.document_extension) or path == "/" or "." not in last_segment


DEFAULT_POLICY = RoutingPolicy()


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


def select_strategy(
    method: str,
    url: str,
    *,
    origin: str,
    mode: Optional[str] = None,
    policy: RoutingPolicy = DEFAULT_POLICY,
) -> Strategy:
    """Pick the caching strategy for a request; first matching rule wins."""
    if method.upper() != "GET":
        return Strategy.PASSTHROUGH

    if origin_of(url) != origin.rstrip("/").lower():
        return Strategy.PASSTHROUGH

    path = urlsplit(url).path or "/"

    if path.startswith(policy.storage_prefix):
        return Strategy.PASSTHROUGH

    if path.startswith(policy.api_prefix):
        if policy.is_never_cached(path):
            return Strategy.PASSTHROUGH
        return Strategy.API

    if mode == "navigate" or policy.looks_like_document(path):
        return Strategy.DOCUMENT

    if path.startswith(policy.hashed_asset_prefix):
        return Strategy.IMMUTABLE_ASSET

    return Strategy.REVALIDATE
