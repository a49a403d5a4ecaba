"""
Shared metrics configuration for the marketplace cache layer.
"""

from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for the cache service.

    Metrics are only registered when a registry is supplied, so several
    collectors can coexist in one process (tests, multiple clients).
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache metrics."""
        self._metrics["cache_operations_total"] = Counter(
            "cache_operations_total",
            "Total cache operations",
            ["operation", "result"],
            registry=self.registry
        )

        self._metrics["cache_operation_duration_seconds"] = Histogram(
            "cache_operation_duration_seconds",
            "Cache operation duration in seconds",
            ["operation"],
            registry=self.registry
        )

        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_warm_total"] = Counter(
            "cache_warm_total",
            "Total cache warm tasks",
            ["result"],
            registry=self.registry
        )

        self._metrics["cache_warm_duration_seconds"] = Histogram(
            "cache_warm_duration_seconds",
            "Cache warm task duration in seconds",
            registry=self.registry
        )

        self._metrics["cache_invalidated_keys_total"] = Counter(
            "cache_invalidated_keys_total",
            "Total keys removed by pattern invalidation",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_singleflight_shared_total"] = Counter(
            "cache_singleflight_shared_total",
            "Callers that joined an in-flight fetch instead of fetching",
            registry=self.registry
        )

        self._metrics["cache_health"] = Gauge(
            "cache_health",
            "1 when the backing store answered the last ping",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    @contextmanager
    def time_operation(self, operation: str):
        """Context manager to time a cache operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.observe_histogram(
                "cache_operation_duration_seconds",
                time.perf_counter() - start_time,
                operation=operation,
            )

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).inc(amount)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is not None:
            (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is not None:
            (metric.labels(**labels) if labels else metric).observe(value)

