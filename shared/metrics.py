"""
Prometheus metrics for Access Layer services.

Each collector owns its ``CollectorRegistry`` so several service instances
can live in one process (tests build many) without duplicate registration.
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram


class MetricsCollector:
    """Named Prometheus metrics for one service."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {
            "http_requests_total": Counter(
                "http_requests_total", "HTTP requests served",
                ["method", "endpoint", "status_code"], registry=self.registry,
            ),
            "http_request_duration_seconds": Histogram(
                "http_request_duration_seconds", "HTTP request duration in seconds",
                ["method", "endpoint"], registry=self.registry,
            ),
            "errors_total": Counter(
                "errors_total", "Errors by code", ["error_type", "service"], registry=self.registry,
            ),
        }
        if service_name == "gateway":
            self._metrics["admission_decisions_total"] = Counter(
                "admission_decisions_total", "Admission decisions by identity kind and outcome",
                ["identity_kind", "outcome"], registry=self.registry,
            )
            self._metrics["bucket_store_latency_seconds"] = Histogram(
                "bucket_store_latency_seconds", "Bucket store call latency in seconds",
                registry=self.registry,
            )

    def get_metric(self, name: str):
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self._metrics["http_requests_total"].labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        self._metrics["http_request_duration_seconds"].labels(method=method, endpoint=endpoint).observe(duration)

    def record_error(self, error_type: str):
        self._metrics["errors_total"].labels(error_type=error_type, service=self.service_name).inc()

    def record_admission(self, identity_kind: str, outcome: str):
        """Count one admission outcome: allowed, denied or fail_open."""
        counter = self._metrics.get("admission_decisions_total")
        if counter is not None:
            counter.labels(identity_kind=identity_kind, outcome=outcome).inc()

    @contextmanager
    def time_operation(self, metric_name: str):
        """Observe the duration of the enclosed block into a histogram."""
        started = time.perf_counter()
        try:
            yield
        finally:
            histogram = self._metrics.get(metric_name)
            if histogram is not None:
                histogram.observe(time.perf_counter() - started)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    return MetricsCollector(service_name, registry)
