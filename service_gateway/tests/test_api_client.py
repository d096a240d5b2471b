"""
Unit tests for the request gateway API client.
"""

import asyncio
import json

import httpx
import pytest
from unittest.mock import AsyncMock

from service_gateway.app.adapters.api_client import ApiClient, ApiFailure, ApiSuccess
from service_gateway.app.session import Navigator
from shared.config import BaseConfig
from shared.errors import ErrorKind, RequestTimeoutError
from shared.metrics import MetricsCollector
from shared.test_helpers import MockUpstream, TestDataFactory

BASE_URL = "http://pratibha.test"
LOGIN_PATH = "/pages/auth/login.html"


@pytest.fixture
def upstream():
    """Programmable upstream origin."""
    return MockUpstream()


@pytest.fixture
def sleeps():
    """Delays the client asked to sleep for."""
    return []


@pytest.fixture
def metrics():
    return MetricsCollector("gateway")


@pytest.fixture
def client(upstream, sleeps, metrics):
    """ApiClient wired to the mock upstream with a recording sleep."""

    async def fake_sleep(delay):
        sleeps.append(delay)

    http_client = httpx.AsyncClient(base_url=BASE_URL, transport=upstream.transport)
    return ApiClient(
        BaseConfig(api_base_url=BASE_URL),
        http_client=http_client,
        navigator=Navigator(),
        worker_channel=AsyncMock(),
        sleep=fake_sleep,
        metrics=metrics,
    )


def csrf_rejection():
    return httpx.Response(403, json={"success": False, "message": "Invalid CSRF token"})


class TestSuccessfulRequests:
    """Test cases for 2xx handling and request shaping."""

    @pytest.mark.asyncio
    async def test_get_returns_payload(self, client, upstream):
        """Test a 2xx response is wrapped with its JSON payload."""
        products = TestDataFactory.create_test_products()
        upstream.json("GET", "/api/products", {"success": True, "data": products})

        result = await client.get_products()

        assert isinstance(result, ApiSuccess)
        assert result.success is True
        assert result.status == 200
        assert result.data["data"] == products

    @pytest.mark.asyncio
    async def test_get_sends_no_csrf_header(self, client, upstream):
        """Test reads neither fetch nor send an anti-forgery token."""
        upstream.json("GET", "/api/market-rates", {"success": True, "data": []})

        await client.get_market_rates()

        assert upstream.calls("GET", "/api/csrf-token") == []
        request = upstream.calls("GET", "/api/market-rates")[0]
        assert "x-csrf-token" not in request.headers
        assert request.headers["content-type"] == "application/json"

    @pytest.mark.asyncio
    async def test_post_attaches_cookie_token(self, client, upstream):
        """Test state-changing calls carry the token from the cookie."""
        client.http_client.cookies.set("csrf_token", "tok-cookie")
        upstream.json("POST", "/api/orders", {"success": True, "data": {"_id": "o1"}}, status_code=201)

        result = await client.create_order(TestDataFactory.create_test_order())

        assert result.success is True
        assert result.status == 201
        request = upstream.calls("POST", "/api/orders")[0]
        assert request.headers["x-csrf-token"] == "tok-cookie"
        assert upstream.calls("GET", "/api/csrf-token") == []

    @pytest.mark.asyncio
    async def test_post_fetches_token_when_cookie_missing(self, client, upstream):
        """Test a missing token is fetched before the call."""
        upstream.json("GET", "/api/csrf-token", {"csrfToken": "tok-fresh"})
        upstream.json("PUT", "/api/orders/o1/status", {"success": True})

        result = await client.update_order_status("o1", "delivered")

        assert result.success is True
        request = upstream.calls("PUT", "/api/orders/o1/status")[0]
        assert request.headers["x-csrf-token"] == "tok-fresh"
        assert json.loads(request.content) == {"status": "delivered"}

    @pytest.mark.asyncio
    async def test_multipart_drops_json_content_type(self, client, upstream):
        """Test uploads let httpx set the multipart boundary."""
        client.http_client.cookies.set("csrf_token", "tok-cookie")
        upstream.json("POST", "/api/upload", {"success": True})

        result = await client.request(
            "/api/upload",
            "POST",
            files={"file": ("rates.csv", b"product,rate\np-tomato,32.5\n", "text/csv")},
        )

        assert result.success is True
        request = upstream.calls("POST", "/api/upload")[0]
        assert request.headers["content-type"].startswith("multipart/form-data; boundary=")

    @pytest.mark.asyncio
    async def test_get_orders_encodes_filters(self, client, upstream):
        """Test order filters become query parameters."""
        upstream.json("GET", "/api/orders", {"success": True, "data": []})

        await client.get_orders({"status": "pending", "limit": 5})

        request = upstream.calls("GET", "/api/orders")[0]
        assert request.url.params["status"] == "pending"
        assert request.url.params["limit"] == "5"

    @pytest.mark.asyncio
    async def test_patch_and_quantity_summary(self, client, upstream):
        """Test the remaining verb and domain helpers hit their endpoints."""
        client.http_client.cookies.set("csrf_token", "tok-1")
        upstream.json("PATCH", "/api/products/p-mango", {"success": True})
        upstream.json("GET", "/api/supplier/quantity-summary", {"success": True, "data": []})

        patched = await client.patch("/api/products/p-mango", {"isActive": False})
        summary = await client.get_quantity_summary()

        assert patched.success is True
        assert summary.success is True
        request = upstream.calls("PATCH", "/api/products/p-mango")[0]
        assert request.headers["x-csrf-token"] == "tok-1"
        assert json.loads(request.content) == {"isActive": False}

    @pytest.mark.asyncio
    async def test_success_is_counted(self, client, upstream, metrics):
        """Test outcomes are recorded per method."""
        upstream.json("GET", "/api/customers", {"success": True, "data": []})

        await client.get_customers()

        assert metrics.sample_value("api_requests_total", method="GET", outcome="success") == 1


class TestErrorClassification:
    """Test cases for non-2xx status classification."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,kind,message", [
        (404, ErrorKind.NOT_FOUND, "Resource not found."),
        (429, ErrorKind.RATE_LIMITED, "Too many requests. Please try again later."),
        (408, ErrorKind.TIMEOUT, "Request timed out. Please try again."),
        (502, ErrorKind.SERVICE_UNAVAILABLE, "Service temporarily unavailable. Please try again later."),
        (503, ErrorKind.SERVICE_UNAVAILABLE, "Service temporarily unavailable. Please try again later."),
        (504, ErrorKind.SERVICE_UNAVAILABLE, "Service temporarily unavailable. Please try again later."),
    ])
    async def test_fixed_messages(self, client, upstream, status, kind, message):
        """Test statuses with fixed user-facing messages."""
        upstream.json("GET", "/api/products", {"success": False, "message": "ignored"}, status_code=status)

        result = await client.get_products()

        assert isinstance(result, ApiFailure)
        assert result.kind is kind
        assert result.message == message
        assert result.status == status

    @pytest.mark.asyncio
    async def test_server_error_prefers_server_message(self, client, upstream):
        """Test 500 surfaces the server's message when present."""
        upstream.json("GET", "/api/products", {"success": False, "message": "Database unavailable"}, status_code=500)

        result = await client.get_products()

        assert result.kind is ErrorKind.SERVER_ERROR
        assert result.message == "Database unavailable"

    @pytest.mark.asyncio
    async def test_validation_carries_errors(self, client, upstream):
        """Test 422 keeps the field errors."""
        client.http_client.cookies.set("csrf_token", "tok-cookie")
        errors = [{"field": "quantity", "message": "must be positive"}]
        upstream.json("POST", "/api/orders", {"success": False, "errors": errors}, status_code=422)

        result = await client.create_order(TestDataFactory.create_test_order())

        assert result.kind is ErrorKind.VALIDATION
        assert result.message == "Invalid data provided. Please check your input."
        assert result.errors == errors

    @pytest.mark.asyncio
    async def test_other_status_is_generic_with_payload(self, client, upstream):
        """Test unlisted statuses keep the raw payload."""
        payload = {"success": False, "error": "Order already invoiced", "invoiceId": "inv-9"}
        upstream.json("GET", "/api/orders", payload, status_code=409)

        result = await client.get_orders()

        assert result.kind is ErrorKind.GENERIC
        assert result.message == "Order already invoiced"
        assert result.data == payload

    @pytest.mark.asyncio
    async def test_forbidden_without_csrf_mention(self, client, upstream):
        """Test a plain 403 is a permission failure."""
        client.http_client.cookies.set("csrf_token", "tok-cookie")
        upstream.json("POST", "/api/market-rates", {"success": False, "message": "Admins only"}, status_code=403)

        result = await client.update_market_rate({"product": "p-tomato", "rate": 30})

        assert result.kind is ErrorKind.FORBIDDEN
        assert result.message == "Admins only"
        assert len(upstream.calls("POST", "/api/market-rates")) == 1

    @pytest.mark.asyncio
    async def test_unparseable_success_body(self, client, upstream):
        """Test a 2xx body that is not JSON."""
        upstream.text("GET", "/api/products", "<html>oops</html>")

        result = await client.get_products()

        assert result.kind is ErrorKind.PARSE_ERROR
        assert result.message == "Server returned an invalid response. Please try again."

    @pytest.mark.asyncio
    async def test_unparseable_error_body(self, client, upstream):
        """Test an error body that is not JSON names the status."""
        upstream.add("GET", "/api/products", httpx.Response(500, text="Internal Server Error"))

        result = await client.get_products()

        assert result.kind is ErrorKind.PARSE_ERROR
        assert result.message == "Server error (500). Please try again later."
        assert result.status == 500


class TestSessionExpiry:
    """Test cases for 401 handling."""

    @pytest.mark.asyncio
    async def test_unauthorized_clears_auth_and_navigates_once(self, client, upstream):
        """Test 401 forgets the user and redirects to login exactly once."""
        client.auth_state.set_user(TestDataFactory.create_test_users()[0].to_payload())
        upstream.json("GET", "/api/orders", {"success": False, "message": "Not authenticated"}, status_code=401)

        result = await client.get_orders()

        assert result.kind is ErrorKind.UNAUTHORIZED
        assert result.message == "Session expired. Please login again."
        assert client.auth_state.is_logged_in() is False
        assert client.navigator.history == [LOGIN_PATH]
        assert len(upstream.calls("GET", "/api/orders")) == 1


class TestCsrfRetry:
    """Test cases for the refresh-and-replay on token rejection."""

    @pytest.mark.asyncio
    async def test_rejected_token_is_refreshed_and_replayed(self, client, upstream, metrics):
        """Test a CSRF 403 triggers one refresh and one replay."""
        client.http_client.cookies.set("csrf_token", "tok-stale")
        upstream.json("GET", "/api/csrf-token", {"csrfToken": "tok-new"})
        upstream.add(
            "POST", "/api/orders",
            csrf_rejection(),
            httpx.Response(201, json={"success": True, "data": {"_id": "o2"}}),
        )

        result = await client.create_order(TestDataFactory.create_test_order())

        assert result.success is True
        calls = upstream.calls("POST", "/api/orders")
        assert [c.headers["x-csrf-token"] for c in calls] == ["tok-stale", "tok-new"]
        assert len(upstream.calls("GET", "/api/csrf-token")) == 1
        assert metrics.sample_value("api_retries_total", reason="csrf-retry") == 1

    @pytest.mark.asyncio
    async def test_second_rejection_is_not_retried(self, client, upstream):
        """Test the replay happens at most once."""
        client.http_client.cookies.set("csrf_token", "tok-stale")
        upstream.json("GET", "/api/csrf-token", {"csrfToken": "tok-new"})
        upstream.add("POST", "/api/orders", csrf_rejection())

        result = await client.create_order(TestDataFactory.create_test_order())

        assert result.kind is ErrorKind.FORBIDDEN
        assert result.message == "Invalid CSRF token"
        assert len(upstream.calls("POST", "/api/orders")) == 2

    @pytest.mark.asyncio
    async def test_csrf_rejection_on_get_is_not_retried(self, client, upstream):
        """Test reads are never replayed on a token rejection."""
        upstream.add("GET", "/api/products", csrf_rejection())

        result = await client.get_products()

        assert result.kind is ErrorKind.FORBIDDEN
        assert len(upstream.calls("GET", "/api/products")) == 1
        assert upstream.calls("GET", "/api/csrf-token") == []


class TestNetworkFailures:
    """Test cases for offline, timeout, abort and retry behaviour."""

    @pytest.mark.asyncio
    async def test_offline_short_circuits(self, client, upstream):
        """Test no request is sent while offline."""
        client.connectivity.set_online(False)

        result = await client.get_products()

        assert result.kind is ErrorKind.OFFLINE
        assert result.offline is True
        assert result.message == "No internet connection. Please check your network."
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_get_retries_with_increasing_delays(self, client, upstream, sleeps):
        """Test three attempts in total, then a silent failure for reads."""
        upstream.add("GET", "/api/products", httpx.ConnectError("connection refused"))

        result = await client.get_products()

        assert len(upstream.calls("GET", "/api/products")) == 3
        assert sleeps == [1.0, 2.0]
        assert result.kind is ErrorKind.NETWORK_ERROR
        assert result.message == ""
        assert result.silent is True

    @pytest.mark.asyncio
    async def test_post_exhausted_retries_reports_connection_issue(self, client, upstream, sleeps):
        """Test writes surface a message after every retry attempt fails."""
        client.http_client.cookies.set("csrf_token", "tok-cookie")
        upstream.add("POST", "/api/orders", httpx.ConnectError("connection reset"))

        result = await client.create_order(TestDataFactory.create_test_order())

        assert len(upstream.calls("POST", "/api/orders")) == 3
        assert sleeps == [1.0, 2.0]
        assert result.kind is ErrorKind.NETWORK_ERROR
        assert result.message == "Connection issue. Please try again."
        assert all(c.headers["x-csrf-token"] == "tok-cookie" for c in upstream.calls("POST", "/api/orders"))

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, client, upstream, sleeps):
        """Test a retry that succeeds returns the success."""
        upstream.add(
            "GET", "/api/products",
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"success": True, "data": []}),
        )

        result = await client.get_products()

        assert result.success is True
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self, client, upstream, sleeps):
        """Test a transport timeout is reported as a timeout."""
        upstream.add("GET", "/api/products", httpx.ReadTimeout("timed out"))

        result = await client.get_products()

        assert result.kind is ErrorKind.TIMEOUT
        assert len(upstream.calls("GET", "/api/products")) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_aborted_before_send(self, client, upstream):
        """Test an already-fired abort signal cancels the call."""
        abort = asyncio.Event()
        abort.set()

        result = await client.request("/api/products", abort=abort)

        assert result.kind is ErrorKind.CANCELLED
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_aborted_in_flight(self, client, upstream, sleeps):
        """Test aborting a slow call cancels it without retrying."""

        async def slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        upstream.add("GET", "/api/products", slow)
        abort = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, abort.set)

        result = await client.request("/api/products", abort=abort)

        assert result.kind is ErrorKind.CANCELLED
        assert result.message == "Request was cancelled."
        assert sleeps == []


class TestFetchWithAuthAndLogout:
    """Test cases for raw fetches and logout."""

    @pytest.mark.asyncio
    async def test_fetch_with_auth_returns_response(self, client, upstream):
        """Test the raw response is handed back."""
        upstream.add("GET", "/api/invoices/inv-1/pdf", httpx.Response(200, content=b"%PDF-1.7"))

        response = await client.fetch_with_auth("/api/invoices/inv-1/pdf")

        assert response.status_code == 200
        assert response.content == b"%PDF-1.7"

    @pytest.mark.asyncio
    async def test_fetch_with_auth_unauthorized(self, client, upstream):
        """Test 401 navigates to login and yields None."""
        upstream.json("GET", "/api/invoices/inv-1/pdf", {"message": "Not authenticated"}, status_code=401)

        response = await client.fetch_with_auth("/api/invoices/inv-1/pdf")

        assert response is None
        assert client.navigator.history == [LOGIN_PATH]

    @pytest.mark.asyncio
    async def test_fetch_with_auth_timeout(self, client, upstream):
        """Test a timeout is raised as RequestTimeoutError."""
        upstream.add("GET", "/api/invoices/inv-1/pdf", httpx.ReadTimeout("timed out"))

        with pytest.raises(RequestTimeoutError):
            await client.fetch_with_auth("/api/invoices/inv-1/pdf")

    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, client, upstream):
        """Test logout posts with the token, clears state and tells the worker."""
        client.http_client.cookies.set("csrf_token", "tok-cookie")
        client.auth_state.set_user(TestDataFactory.create_test_users()[1].to_payload())
        upstream.json("POST", "/api/auth/logout", {"success": True})

        await client.logout()

        request = upstream.calls("POST", "/api/auth/logout")[0]
        assert request.headers["x-csrf-token"] == "tok-cookie"
        assert client.auth_state.is_logged_in() is False
        client.worker_channel.post_message.assert_awaited_once_with("logout")
        assert client.navigator.history == [LOGIN_PATH]

    @pytest.mark.asyncio
    async def test_logout_cleans_up_when_server_unreachable(self, client, upstream):
        """Test local clean-up happens even if the logout call fails."""
        client.http_client.cookies.set("csrf_token", "tok-cookie")
        client.auth_state.set_user(TestDataFactory.create_test_users()[1].to_payload())
        upstream.add("POST", "/api/auth/logout", httpx.ConnectError("connection refused"))

        await client.logout()

        assert client.auth_state.is_logged_in() is False
        client.worker_channel.post_message.assert_awaited_once_with("logout")
        assert client.navigator.current == LOGIN_PATH
