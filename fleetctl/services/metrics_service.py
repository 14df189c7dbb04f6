"""Prometheus metrics for the fleet control plane.

Holds the generic per-endpoint operation metrics plus the domain counters
for bootstrap, signing, rollouts and cache health.
"""

import logging

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


class MetricsService:
    """Singleton owning the application's Prometheus collectors."""

    def __init__(self) -> None:
        self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        """Register collectors once per service instance."""
        if hasattr(self, "operations_total"):
            return

        self.operations_total = Counter(
            "fleet_operations_total",
            "Total API operations",
            ["operation", "status"],
        )
        self.operation_duration_seconds = Histogram(
            "fleet_operation_duration_seconds",
            "Duration of API operations in seconds",
            ["operation"],
        )
        self.bootstrap_requests_total = Counter(
            "fleet_bootstrap_requests_total",
            "Bootstrap requests by outcome",
            ["result"],
        )
        self.bootstrap_duration_seconds = Histogram(
            "fleet_bootstrap_duration_seconds",
            "Duration of bootstrap processing in seconds",
        )
        self.signing_fallback_total = Counter(
            "fleet_bootstrap_signing_fallback_total",
            "Responses signed with the global secret because device secret derivation failed",
        )
        self.rollout_transitions_total = Counter(
            "fleet_rollout_transitions_total",
            "Rollout state transitions",
            ["from_status", "to_status"],
        )
        self.auto_rollbacks_total = Counter(
            "fleet_rollout_auto_rollbacks_total",
            "Automatic rollout rollbacks",
            ["reason"],
        )
        self.cache_errors_total = Counter(
            "fleet_cache_errors_total",
            "Swallowed cache failures",
            ["operation"],
        )
        self.notifications_total = Counter(
            "fleet_notifications_total",
            "Dispatched notification events",
            ["event", "status"],
        )

    def record_operation(
        self, operation: str, status: str, duration: float | None = None
    ) -> None:
        """Record an API operation."""
        try:
            self.operations_total.labels(operation=operation, status=status).inc()
            if duration is not None:
                self.operation_duration_seconds.labels(operation=operation).observe(duration)
        except Exception as e:
            logger.error("Error recording operation metric: %s", e)

    def record_bootstrap(self, result: str, duration: float) -> None:
        self.bootstrap_requests_total.labels(result=result).inc()
        self.bootstrap_duration_seconds.observe(duration)

    def record_signing_fallback(self) -> None:
        self.signing_fallback_total.inc()

    def record_rollout_transition(self, from_status: str, to_status: str) -> None:
        self.rollout_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    def record_auto_rollback(self, reason: str) -> None:
        self.auto_rollbacks_total.labels(reason=reason).inc()

    def record_cache_error(self, operation: str) -> None:
        self.cache_errors_total.labels(operation=operation).inc()

    def record_notification(self, event: str, status: str) -> None:
        self.notifications_total.labels(event=event, status=status).inc()

    def get_metrics_text(self) -> str:
        """Render all registered metrics in Prometheus text format."""
        return generate_latest(REGISTRY).decode("utf-8")
