"""
Shared configuration management for the Pratibha Marketing web core.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# App shell fetched when the edge worker installs
DEFAULT_PRECACHE_URLS = (
    "/",
    "/index.html",
    "/pages/auth/login.html",
    "/pages/auth/signup.html",
    "/pages/products/",
    "/pages/orders/",
    "/pages/order-form/",
    "/pages/customers/",
    "/pages/market-rates/",
    "/pages/packing/",
    "/pages/reconciliation/",
    "/manifest.json",
    "/js/api.js",
    "/js/auth.js",
    "/js/utils.js",
    "/js/ui.js",
    "/js/init.js",
    "/js/csrf.js",
    "/icons/icon.svg",
    "/icons/icon-192.png",
    "/icons/icon-512.png",
    "/css/variables.css",
    "/css/base.css",
    "/css/components.css",
    "/css/utilities.css",
    "/css/responsive.css",
    "/css/animations/skeleton.css",
    "/css/animations/buttons.css",
    "/css/animations/cards.css",
    "/css/animations/inputs.css",
    "/css/animations/badges.css",
    "/css/animations/segments.css",
    "/css/animations/page.css",
    "/css/animations/swipe.css",
    "/css/pages/login.css",
    "/css/pages/signup.css",
    "/css/pages/index.css",
    "/css/pages/orders.css",
    "/css/pages/products.css",
    "/css/pages/market-rates.css",
    "/css/pages/customer-management.css",
    "/css/pages/customer-order-form.css",
    "/css/pages/packing.css",
    "/css/pages/reconciliation.css",
)


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PRATIBHA_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Pages talk to the edge worker host, which forwards to the upstream origin
    api_base_url: str = Field(default="http://localhost:8010")
    upstream_origin: str = Field(default="http://localhost:5001")
    # Origin pages are served from; empty means taken from the first request
    public_origin: str = Field(default="")

    # Request gateway
    request_timeout_seconds: float = Field(default=30.0)
    fetch_with_auth_timeout_seconds: float = Field(default=15.0)
    max_network_retries: int = Field(default=2)
    retry_base_delay_seconds: float = Field(default=1.0)
    login_path: str = Field(default="/pages/auth/login.html")
    logout_path: str = Field(default="/api/auth/logout")

    # Anti-forgery tokens
    csrf_cookie_name: str = Field(default="csrf_token")
    csrf_header_name: str = Field(default="X-CSRF-Token")
    csrf_token_path: str = Field(default="/api/csrf-token")
    csrf_refresh_timeout_seconds: float = Field(default=5.0)

    # Edge cache worker
    cache_prefix: str = Field(default="pratibha")
    cache_version: str = Field(default="v37")
    api_cache_version: str = Field(default="v1")
    max_api_cache_entries: int = Field(default=50)
    cache_backend: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")
    precache_urls: List[str] = Field(default_factory=lambda: list(DEFAULT_PRECACHE_URLS))
    # Fail install when any precache URL cannot be fetched
    precache_strict: bool = Field(default=False)
    worker_message_path: str = Field(default="/__sw__/message")

    @property
    def asset_cache_name(self) -> str:
        """Versioned general-asset store name."""
        return f"{self.cache_prefix}-{self.cache_version}"

    @property
    def api_cache_name(self) -> str:
        """API-data store name, fixed across deployments."""
        return f"{self.cache_prefix}-api-{self.api_cache_version}"


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
