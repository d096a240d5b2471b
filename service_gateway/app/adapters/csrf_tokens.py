"""
Anti-forgery token cache for the request gateway.
"""

import asyncio
from typing import Optional, TYPE_CHECKING

import httpx

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class CsrfTokenCache:
    """Reads the CSRF cookie and refreshes it from the backend.

    Refreshes are single-flight: while one is running, every caller awaits
    the same task and no second request is issued. The in-flight reference
    is cleared once the task finishes, whatever its outcome.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        token_path: str = "/api/csrf-token",
        cookie_name: str = "csrf_token",
        timeout: float = 5.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.client = client
        self.token_path = token_path
        self.cookie_name = cookie_name
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("gateway.csrf_tokens")
        self._inflight: Optional["asyncio.Task[Optional[str]]"] = None

    def get_token(self) -> Optional[str]:
        """Current token from the cookie jar, without touching the network."""
        return self.client.cookies.get(self.cookie_name)

    async def refresh_token(self) -> Optional[str]:
        """Fetch a fresh token, sharing any refresh already in progress."""
        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._fetch_token())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        # A cancelled caller must not cancel the refresh other callers share
        return await asyncio.shield(task)

    async def ensure_token(self) -> Optional[str]:
        """Cached token if there is one, otherwise a refreshed one."""
        token = self.get_token()
        if not token:
            token = await self.refresh_token()
        return token

    def _clear_inflight(self, task: "asyncio.Task[Optional[str]]") -> None:
        if self._inflight is task:
            self._inflight = None

    async def _fetch_token(self) -> Optional[str]:
        try:
            response = await self.client.get(self.token_path, timeout=self.timeout)
        except httpx.TimeoutException:
            self.logger.warning("CSRF token refresh timed out", timeout=self.timeout)
            self._record("timeout")
            return None
        except httpx.HTTPError as e:
            self.logger.error("Failed to refresh CSRF token", error=str(e))
            self._record("error")
            return None

        if not response.is_success:
            self.logger.warning("CSRF token endpoint rejected refresh", status_code=response.status_code)
            self._record("rejected")
            return None

        token: Optional[str] = None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            token = payload.get("csrfToken")

        self._record("ok")
        # The server also sets the cookie, so fall back to reading it
        return token or self.get_token()

    def _record(self, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("csrf_refresh_total", status=status)
