"""
Shared metrics configuration for the Pratibha Marketing web core.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry so several services (or test cases) can
    live in one process without duplicate-registration errors.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "gateway":
            self._setup_gateway_metrics()
        elif self.service_name == "worker":
            self._setup_worker_metrics()

    def _setup_gateway_metrics(self):
        """Set up request gateway metrics."""
        self._metrics["api_requests_total"] = Counter(
            "api_requests_total",
            "Gateway requests by outcome",
            ["method", "outcome"],
            registry=self.registry
        )

        self._metrics["api_retries_total"] = Counter(
            "api_retries_total",
            "Gateway retries",
            ["reason"],
            registry=self.registry
        )

        self._metrics["csrf_refresh_total"] = Counter(
            "csrf_refresh_total",
            "Anti-forgery token refreshes",
            ["status"],
            registry=self.registry
        )

    def _setup_worker_metrics(self):
        """Set up edge cache worker metrics."""
        self._metrics["cache_lookups_total"] = Counter(
            "cache_lookups_total",
            "Cache store lookups",
            ["store", "result"],
            registry=self.registry
        )

        self._metrics["cache_strategy_total"] = Counter(
            "cache_strategy_total",
            "Intercepted requests by strategy and outcome",
            ["strategy", "outcome"],
            registry=self.registry
        )

        self._metrics["cache_evictions_total"] = Counter(
            "cache_evictions_total",
            "Entries evicted to honour the capacity bound",
            ["store"],
            registry=self.registry
        )

    def render(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc(amount)

    def sample_value(self, metric_name: str, **labels) -> float:
        """Current value of a counter sample, 0 when never incremented."""
        value = self.registry.get_sample_value(metric_name, labels)
        return value or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
