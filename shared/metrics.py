"""
Shared metrics configuration for the Table Access Layer.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
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

        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_resource_cache_metrics()

    def _setup_resource_cache_metrics(self):
        """Set up metrics for the instance/table/reader caches."""
        labels = ["instance", "cache"]

        self._metrics["resource_cache_hits_total"] = Counter(
            "resource_cache_hits_total",
            "Total resource cache hits",
            labels,
            registry=self.registry
        )

        self._metrics["resource_cache_misses_total"] = Counter(
            "resource_cache_misses_total",
            "Total resource cache misses",
            labels,
            registry=self.registry
        )

        self._metrics["resource_cache_loads_total"] = Counter(
            "resource_cache_loads_total",
            "Total resource constructions",
            labels + ["result"],
            registry=self.registry
        )

        self._metrics["resource_cache_load_duration_seconds"] = Histogram(
            "resource_cache_load_duration_seconds",
            "Resource construction duration in seconds",
            labels,
            registry=self.registry
        )

        self._metrics["resource_cache_evictions_total"] = Counter(
            "resource_cache_evictions_total",
            "Total resources removed from the cache",
            labels + ["cause"],
            registry=self.registry
        )

        self._metrics["resource_cache_release_failures_total"] = Counter(
            "resource_cache_release_failures_total",
            "Total failures releasing cached resources",
            labels,
            registry=self.registry
        )

        self._metrics["resource_cache_entries"] = Gauge(
            "resource_cache_entries",
            "Resident resource cache entries",
            labels,
            registry=self.registry
        )

    def export(self) -> bytes:
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

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
