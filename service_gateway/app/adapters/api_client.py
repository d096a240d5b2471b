"""
Request gateway for application-originated API calls.

Every call comes back as an ``ApiSuccess`` or ``ApiFailure``; callers never
see raw transport exceptions. Transient network failures are retried a
bounded number of times and a rejected anti-forgery token is refreshed
once before the call is replayed.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union, TYPE_CHECKING
from urllib.parse import urlencode

import httpx

from shared.config import BaseConfig
from shared.errors import ErrorKind, RequestTimeoutError
from shared.logging import get_logger
from shared.retry import RetryConfig, calculate_delay, linear_retry_config
from ..session import AuthState, Connectivity, Navigator
from .csrf_tokens import CsrfTokenCache

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector
    from .worker_channel import WorkerChannel

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})
SERVICE_UNAVAILABLE_STATUSES = frozenset({502, 503, 504})


@dataclass(frozen=True)
class ApiSuccess:
    """2xx response with its decoded JSON payload."""

    data: Any
    status: int
    success: bool = field(default=True, init=False)


@dataclass(frozen=True)
class ApiFailure:
    """Classified failure. ``message`` is empty when the UI should stay quiet."""

    message: str
    kind: ErrorKind
    status: Optional[int] = None
    errors: Any = None
    data: Any = None
    silent: bool = False
    success: bool = field(default=False, init=False)

    @property
    def offline(self) -> bool:
        return self.kind is ErrorKind.OFFLINE


ApiResult = Union[ApiSuccess, ApiFailure]


@dataclass
class RequestOptions:
    """Caller-visible options for a single gateway call."""

    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    json: Any = None
    content: Optional[Union[str, bytes]] = None
    data: Optional[Mapping[str, Any]] = None
    files: Any = None
    params: Optional[Mapping[str, Any]] = None
    abort: Optional[asyncio.Event] = None

    @property
    def is_state_changing(self) -> bool:
        return self.method in STATE_CHANGING_METHODS

    @property
    def is_multipart(self) -> bool:
        return self.files is not None


class RequestAborted(Exception):
    """The caller's abort signal fired before a response arrived."""


def _server_message(payload: Any, key: str = "message") -> Optional[str]:
    if isinstance(payload, dict):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _is_csrf_rejection(message: Optional[str]) -> bool:
    return bool(message) and "csrf" in message.lower()


class ApiClient:
    """Single entry point for API calls made on behalf of a page session."""

    def __init__(
        self,
        config: Optional[BaseConfig] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        csrf: Optional[CsrfTokenCache] = None,
        auth_state: Optional[AuthState] = None,
        connectivity: Optional[Connectivity] = None,
        navigator: Optional[Navigator] = None,
        worker_channel: Optional["WorkerChannel"] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.config = config or BaseConfig()
        self.http_client = http_client or httpx.AsyncClient(base_url=self.config.api_base_url)
        self.metrics = metrics
        self.csrf = csrf or CsrfTokenCache(
            self.http_client,
            token_path=self.config.csrf_token_path,
            cookie_name=self.config.csrf_cookie_name,
            timeout=self.config.csrf_refresh_timeout_seconds,
            metrics=metrics,
        )
        self.auth_state = auth_state or AuthState()
        self.connectivity = connectivity or Connectivity()
        self.navigator = navigator or Navigator()
        self.worker_channel = worker_channel
        self.retry_config = retry_config or linear_retry_config(
            self.config.max_network_retries,
            self.config.retry_base_delay_seconds,
        )
        self._sleep = sleep
        self.logger = get_logger("gateway.api_client")

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        *,
        headers: Optional[Mapping[str, str]] = None,
        json: Any = None,
        content: Optional[Union[str, bytes]] = None,
        data: Optional[Mapping[str, Any]] = None,
        files: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> ApiResult:
        """Issue an API call and classify its outcome."""
        options = RequestOptions(
            method=method.upper(),
            headers=dict(headers or {}),
            json=json,
            content=content,
            data=data,
            files=files,
            params=params,
            abort=abort,
        )
        result = await self._request(endpoint, options)
        self._record_outcome(options.method, result)
        return result

    async def _request(
        self,
        endpoint: str,
        options: RequestOptions,
        is_retry: bool = False,
        retry_count: int = 0,
        csrf_token: Optional[str] = None,
    ) -> ApiResult:
        headers = {"Content-Type": "application/json", **options.headers}

        if options.is_state_changing:
            token = csrf_token or await self.csrf.ensure_token()
            if token:
                headers[self.config.csrf_header_name] = token

        if options.is_multipart:
            # httpx supplies the multipart boundary
            headers.pop("Content-Type", None)

        if not self.connectivity.is_online():
            return ApiFailure("No internet connection. Please check your network.", ErrorKind.OFFLINE)

        try:
            response = await self._send(endpoint, options, headers)
        except (httpx.RequestError, RequestAborted) as e:
            return await self._handle_network_error(endpoint, options, e, is_retry, retry_count, csrf_token)

        try:
            payload = response.json()
        except ValueError:
            self.logger.error(
                "API response parse error",
                endpoint=endpoint,
                status_code=response.status_code,
            )
            if response.is_success:
                message = "Server returned an invalid response. Please try again."
            else:
                message = f"Server error ({response.status_code}). Please try again later."
            return ApiFailure(message, ErrorKind.PARSE_ERROR, status=response.status_code)

        return await self._classify(endpoint, options, response.status_code, payload, is_retry)

    async def _send(self, endpoint: str, options: RequestOptions, headers: Dict[str, str]) -> httpx.Response:
        if options.abort is not None and options.abort.is_set():
            raise RequestAborted()

        send = self.http_client.request(
            options.method,
            endpoint,
            headers=headers,
            json=options.json,
            content=options.content,
            data=options.data,
            files=options.files,
            params=options.params,
            timeout=self.config.request_timeout_seconds,
        )
        if options.abort is None:
            return await send

        request_task = asyncio.ensure_future(send)
        abort_task = asyncio.ensure_future(options.abort.wait())
        try:
            done, _ = await asyncio.wait({request_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in (request_task, abort_task) if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if request_task in done:
            return request_task.result()
        raise RequestAborted()

    async def _classify(
        self,
        endpoint: str,
        options: RequestOptions,
        status: int,
        payload: Any,
        is_retry: bool,
    ) -> ApiResult:
        if 200 <= status < 300:
            return ApiSuccess(payload, status)

        message = _server_message(payload)

        if status == 401:
            self.auth_state.clear()
            self.navigator.navigate(self.config.login_path)
            return ApiFailure("Session expired. Please login again.", ErrorKind.UNAUTHORIZED, status=401)

        if status == 403:
            if _is_csrf_rejection(message) and not is_retry and options.is_state_changing:
                self.logger.info("CSRF token rejected, refreshing and retrying", endpoint=endpoint)
                self._record_retry(ErrorKind.CSRF_RETRY)
                token = await self.csrf.refresh_token()
                return await self._request(endpoint, options, is_retry=True, csrf_token=token)
            return ApiFailure(
                message or "Access denied. You do not have permission.",
                ErrorKind.FORBIDDEN,
                status=403,
            )

        if status == 404:
            return ApiFailure("Resource not found.", ErrorKind.NOT_FOUND, status=404)

        if status == 429:
            return ApiFailure("Too many requests. Please try again later.", ErrorKind.RATE_LIMITED, status=429)

        if status == 408:
            return ApiFailure("Request timed out. Please try again.", ErrorKind.TIMEOUT, status=408)

        if status == 500:
            return ApiFailure(
                message or "Server error. Please try again later.",
                ErrorKind.SERVER_ERROR,
                status=500,
            )

        if status in SERVICE_UNAVAILABLE_STATUSES:
            return ApiFailure(
                "Service temporarily unavailable. Please try again later.",
                ErrorKind.SERVICE_UNAVAILABLE,
                status=status,
            )

        if status == 422:
            return ApiFailure(
                message or "Invalid data provided. Please check your input.",
                ErrorKind.VALIDATION,
                status=422,
                errors=payload.get("errors") if isinstance(payload, dict) else None,
            )

        return ApiFailure(
            message or _server_message(payload, "error") or "Something went wrong",
            ErrorKind.GENERIC,
            status=status,
            data=payload,
        )

    async def _handle_network_error(
        self,
        endpoint: str,
        options: RequestOptions,
        error: Exception,
        is_retry: bool,
        retry_count: int,
        csrf_token: Optional[str],
    ) -> ApiResult:
        self.logger.warning(
            "API request failed",
            endpoint=endpoint,
            method=options.method,
            attempt=retry_count + 1,
            error=str(error) or type(error).__name__,
        )

        if not self.connectivity.is_online():
            return ApiFailure("No internet connection.", ErrorKind.OFFLINE)

        if isinstance(error, RequestAborted):
            return ApiFailure("Request was cancelled.", ErrorKind.CANCELLED)

        if isinstance(error, httpx.TimeoutException):
            return ApiFailure("Request timed out. Please try again.", ErrorKind.TIMEOUT)

        if retry_count < self.retry_config.max_retries:
            delay = calculate_delay(retry_count + 1, self.retry_config)
            self.logger.info(
                "Network error, retrying",
                endpoint=endpoint,
                retry=retry_count + 1,
                max_retries=self.retry_config.max_retries,
                delay=delay,
            )
            self._record_retry(ErrorKind.NETWORK_ERROR)
            await self._sleep(delay)
            return await self._request(
                endpoint,
                options,
                is_retry=is_retry,
                retry_count=retry_count + 1,
                csrf_token=csrf_token,
            )

        if options.method == "GET":
            # Background reads fail quietly
            return ApiFailure("", ErrorKind.NETWORK_ERROR, silent=True)

        return ApiFailure("Connection issue. Please try again.", ErrorKind.NETWORK_ERROR)

    def _record_outcome(self, method: str, result: ApiResult) -> None:
        if self.metrics:
            outcome = "success" if result.success else result.kind.value
            self.metrics.increment_counter("api_requests_total", method=method, outcome=outcome)

    def _record_retry(self, reason: ErrorKind) -> None:
        if self.metrics:
            self.metrics.increment_counter("api_retries_total", reason=reason.value)

    # Verb helpers

    async def get(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> ApiResult:
        return await self.request(endpoint, "GET", params=params)

    async def post(self, endpoint: str, body: Any = None) -> ApiResult:
        return await self.request(endpoint, "POST", json=body)

    async def put(self, endpoint: str, body: Any = None) -> ApiResult:
        return await self.request(endpoint, "PUT", json=body)

    async def patch(self, endpoint: str, body: Any = None) -> ApiResult:
        return await self.request(endpoint, "PATCH", json=body)

    async def delete(self, endpoint: str) -> ApiResult:
        return await self.request(endpoint, "DELETE")

    # Common endpoints

    async def get_products(self) -> ApiResult:
        return await self.get("/api/products")

    async def get_customers(self) -> ApiResult:
        return await self.get("/api/customers")

    async def get_orders(self, filters: Optional[Mapping[str, Any]] = None) -> ApiResult:
        """List orders, optionally filtered by status, paymentStatus or limit."""
        query = urlencode(filters or {})
        return await self.get(f"/api/orders?{query}" if query else "/api/orders")

    async def get_market_rates(self) -> ApiResult:
        return await self.get("/api/market-rates")

    async def get_quantity_summary(self) -> ApiResult:
        return await self.get("/api/supplier/quantity-summary")

    async def create_order(self, order: Dict[str, Any]) -> ApiResult:
        return await self.post("/api/orders", order)

    async def update_order_status(self, order_id: str, status: str) -> ApiResult:
        return await self.put(f"/api/orders/{order_id}/status", {"status": status})

    async def update_market_rate(self, rate: Dict[str, Any]) -> ApiResult:
        return await self.post("/api/market-rates", rate)

    async def fetch_with_auth(self, url: str, method: str = "GET", **kwargs: Any) -> Optional[httpx.Response]:
        """Raw request for callers that need the response itself.

        Returns ``None`` after redirecting to login when the session has
        expired.
        """
        try:
            response = await self.http_client.request(
                method,
                url,
                timeout=self.config.fetch_with_auth_timeout_seconds,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(details={"url": url}) from e

        if response.status_code == 401:
            self.navigator.navigate(self.config.login_path)
            return None
        return response

    async def logout(self) -> None:
        """End the session on the server and purge everything kept locally."""
        headers: Dict[str, str] = {}
        token = await self.csrf.ensure_token()
        if token:
            headers[self.config.csrf_header_name] = token

        try:
            response = await self.http_client.post(
                self.config.logout_path,
                headers=headers,
                timeout=self.config.request_timeout_seconds,
            )
            if not response.is_success:
                self.logger.warning("Server-side logout returned error", status_code=response.status_code)
        except httpx.HTTPError as e:
            self.logger.error("Logout request failed; server session may still be active", error=str(e))
        finally:
            self.auth_state.clear()
            if self.worker_channel is not None:
                await self.worker_channel.post_message("logout")
            self.navigator.navigate(self.config.login_path)
