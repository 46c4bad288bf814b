"""
Prometheus metrics collection.

Each app owns its CollectorRegistry so several gates can coexist in one
process (tests, multi-app hosts).
"""

import time
from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

logger = structlog.get_logger(__name__)


class GateMetrics:
    """
    Centralized metrics for the request gate.

    Keep metrics simple,
    use in-memory counters, let Prometheus handle storage.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        # Service info
        self.service_info = Info(
            "healthgate_service",
            "Request gate service information",
            registry=self.registry,
        )
        self.service_info.info({
            "version": "0.1.0",
            "service": "healthgate",
        })

        # Request metrics
        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests seen by the gate",
            ["method", "status_code"],
            registry=self.registry,
        )

        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method"],
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )

        # Gate decisions
        self.rejections_total = Counter(
            "gate_rejections_total",
            "Requests stopped by a gate stage",
            ["stage", "code"],
            registry=self.registry,
        )

        self.threat_detections_total = Counter(
            "gate_threat_detections_total",
            "Heuristic threat matches",
            ["category"],
            registry=self.registry,
        )

        self.rate_limited_total = Counter(
            "gate_rate_limited_total",
            "Requests rejected by the rate limiter",
            ["tier"],
            registry=self.registry,
        )

        self.api_key_authentications_total = Counter(
            "gate_api_key_authentications_total",
            "API key authentication outcomes",
            ["outcome"],
            registry=self.registry,
        )

        self.stage_failures_total = Counter(
            "gate_stage_failures_total",
            "Internal stage errors that were failed open",
            ["stage"],
            registry=self.registry,
        )

        # System metrics
        self.uptime_seconds = Gauge(
            "uptime_seconds",
            "Service uptime in seconds",
            registry=self.registry,
        )

        self._start_time = time.time()

    def record_request(self, method: str, status_code: int, duration_seconds: float) -> None:
        """Record HTTP request metrics."""
        self.requests_total.labels(method=method, status_code=str(status_code)).inc()
        self.request_duration.labels(method=method).observe(duration_seconds)
        self.uptime_seconds.set(time.time() - self._start_time)

    def record_rejection(self, stage: str, code: str) -> None:
        self.rejections_total.labels(stage=stage, code=code).inc()

    def record_threat(self, category: str) -> None:
        self.threat_detections_total.labels(category=category).inc()

    def record_rate_limited(self, tier: str) -> None:
        self.rate_limited_total.labels(tier=tier).inc()

    def record_authentication(self, outcome: str) -> None:
        self.api_key_authentications_total.labels(outcome=outcome).inc()

    def record_stage_failure(self, stage: str) -> None:
        self.stage_failures_total.labels(stage=stage).inc()
