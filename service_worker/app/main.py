"""
Edge cache worker host.

Every request a page makes reaches this service first. The active worker
either answers it from its strategies or declines, in which case the
request is forwarded to the upstream origin untouched.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ErrorResponse, PrecacheError, UnknownControlMessageError
from shared.logging import request_id_var
from .caching.cache_storage import CacheStorage, create_cache_storage
from .caching.router import ServiceWorkerRouter, WorkerRegistration
from .caching.routing import origin_of
from .caching.strategies import FetchRequest, HttpFetcher

# Not copied from an httpx response; the body is already decoded
RESPONSE_SKIP_HEADERS = frozenset({
    "content-length", "content-encoding", "transfer-encoding", "connection", "keep-alive",
})

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def to_starlette_response(response: httpx.Response) -> Response:
    """Copy status, body and headers (repeated ones included) into a FastAPI response."""
    result = Response(content=response.content, status_code=response.status_code)
    for name, value in response.headers.multi_items():
        if name.lower() not in RESPONSE_SKIP_HEADERS:
            result.headers.append(name, value)
    return result


class EdgeCacheService(BaseService):
    """Edge worker host service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        storage: Optional[CacheStorage] = None,
    ):
        super().__init__("worker", 8010, config)
        self.storage = storage or create_cache_storage(self.config)
        self.upstream_client = httpx.AsyncClient(
            transport=transport,
            timeout=self.config.request_timeout_seconds,
        )
        self.fetcher = HttpFetcher(self.upstream_client, self.config.upstream_origin)
        self.registration = WorkerRegistration()
        self._start_lock = asyncio.Lock()

        self._setup_worker_routes()

        self.app.state.edge_service = self

    @property
    def worker(self) -> Optional[ServiceWorkerRouter]:
        return self.registration.active

    async def startup(self) -> None:
        if self.config.public_origin:
            await self._try_start(self.config.public_origin)

    async def shutdown(self) -> None:
        if self.worker is not None:
            await self.worker.close()
        await self.upstream_client.aclose()
        await self.storage.aclose()

    async def start(self, origin: str) -> ServiceWorkerRouter:
        """Register the worker for ``origin``; later calls return the same worker."""
        async with self._start_lock:
            if self.worker is None:
                worker = ServiceWorkerRouter.from_config(
                    self.config,
                    self.storage,
                    self.fetcher,
                    origin=origin,
                    metrics=self.metrics,
                )
                await self.registration.register(worker)
            return self.worker

    async def _check_dependencies(self) -> Dict[str, Any]:
        # Raises CacheStorageError when the backend is unreachable
        await self.storage.keys()
        return {
            "cache_storage": self.config.cache_backend,
            "worker": self.worker.state.value if self.worker else "not-started",
        }

    async def _try_start(self, origin: str) -> Optional[ServiceWorkerRouter]:
        try:
            return await self.start(origin)
        except PrecacheError:
            # Retried on the next request; until then pages go to the network
            self.metrics.record_error("PRECACHE_FAILED")
            return None

    async def _ensure_worker(self, request: Request) -> Optional[ServiceWorkerRouter]:
        if self.worker is not None:
            return self.worker
        return await self._try_start(self.config.public_origin or origin_of(str(request.url)))

    def _error_response(self, status_code: int, code: str, message: str, details: Dict[str, Any]) -> JSONResponse:
        error = ErrorResponse(
            request_id=request_id_var.get(),
            code=code,
            message=message,
            details=details,
        )
        return JSONResponse(status_code=status_code, content=error.model_dump())

    def _worker_unavailable(self) -> JSONResponse:
        return self._error_response(
            503, "WORKER_UNAVAILABLE", "Edge worker is not installed", {"version": self.config.asset_cache_name},
        )

    def _setup_worker_routes(self):
        """Set up control, status and interception routes."""

        @self.app.post(self.config.worker_message_path)
        async def post_message(request: Request):
            """Control channel for pages."""
            worker = await self._ensure_worker(request)
            if worker is None:
                return self._worker_unavailable()
            body = await request.body()
            try:
                raw = json.loads(body)
            except ValueError:
                raise UnknownControlMessageError(body.decode("utf-8", errors="replace"))

            command = await worker.handle_message(raw)
            return {"command": command.value, "state": worker.state.value}

        @self.app.get("/__sw__/status")
        async def worker_status(request: Request):
            """Worker state, version and store sizes."""
            worker = await self._ensure_worker(request)
            if worker is None:
                return self._worker_unavailable()
            return await worker.status()

        @self.app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
        async def intercept(request: Request, path: str):
            """Route every other request through the worker, then the network."""
            worker = await self._ensure_worker(request)
            fetch_request = FetchRequest(
                method=request.method,
                url=str(request.url),
                mode=request.headers.get("sec-fetch-mode"),
                headers=tuple(request.headers.items()),
                body=await request.body(),
            )

            response = await worker.handle_fetch(fetch_request) if worker is not None else None
            if response is None:
                try:
                    response = await self.fetcher(fetch_request)
                except httpx.RequestError as e:
                    self.logger.warning(
                        "Upstream unavailable",
                        method=request.method,
                        path=request.url.path,
                        error=str(e),
                    )
                    self.metrics.record_error("UPSTREAM_UNAVAILABLE")
                    return self._error_response(
                        502, "UPSTREAM_UNAVAILABLE", "Upstream origin unavailable", {"error": str(e)},
                    )

            return to_starlette_response(response)


def create_app(
    config: Optional[ServiceConfig] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    storage: Optional[CacheStorage] = None,
):
    """Create FastAPI application."""
    service = EdgeCacheService(config or get_config("worker", 8010), transport=transport, storage=storage)
    return service.app


if __name__ == "__main__":
    service = EdgeCacheService()
    service.run()
