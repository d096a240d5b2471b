"""
Adapters package for the request gateway.

Contains the HTTP-facing pieces of a page session:

- ApiClient: classified API calls with retry and CSRF handling
- CsrfTokenCache: cookie-backed anti-forgery token with single-flight refresh
- WorkerChannel: control messages to the edge cache worker

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .api_client import ApiClient, ApiFailure, ApiResult, ApiSuccess, RequestAborted
from .csrf_tokens import CsrfTokenCache
from .worker_channel import WorkerChannel

__all__ = [
    "ApiClient",
    "ApiFailure",
    "ApiResult",
    "ApiSuccess",
    "RequestAborted",
    "CsrfTokenCache",
    "WorkerChannel",
]
