"""
Page-session wiring for the request gateway.
"""

import uuid
from typing import Optional

import httpx

from shared.config import BaseConfig, get_config
from shared.logging import configure_logging, set_session_context
from shared.metrics import get_metrics_collector
from .adapters import ApiClient, CsrfTokenCache, WorkerChannel


def create_api_client(
    config: Optional[BaseConfig] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    session_id: Optional[str] = None,
) -> ApiClient:
    """Build the gateway for one page session.

    The CSRF cache, the worker channel and the API calls share one
    ``httpx.AsyncClient`` so they share its cookie jar.
    """
    config = config or get_config("gateway", 0)
    configure_logging("gateway", config.log_level)
    set_session_context(session_id=session_id or str(uuid.uuid4()))

    metrics = get_metrics_collector("gateway")
    http_client = httpx.AsyncClient(base_url=config.api_base_url, transport=transport)
    csrf = CsrfTokenCache(
        http_client,
        token_path=config.csrf_token_path,
        cookie_name=config.csrf_cookie_name,
        timeout=config.csrf_refresh_timeout_seconds,
        metrics=metrics,
    )
    return ApiClient(
        config,
        http_client=http_client,
        csrf=csrf,
        worker_channel=WorkerChannel(http_client, config.worker_message_path),
        metrics=metrics,
    )
