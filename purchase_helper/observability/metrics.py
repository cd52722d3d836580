"""
Metrics Collection with Prometheus.

Exposes purchase flow metrics for monitoring.
"""

import time
from enum import Enum
from typing import Callable

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info

from purchase_helper.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    OPERATION = "operation"
    STATUS = "status"
    CALL = "call"
    SUCCESS = "success"
    RESOLUTION = "resolution"
    GRANTED = "granted"
    ERROR_TYPE = "error_type"


class PurchaseHelperMetrics:
    """
    Centralized metrics for the purchase helper.

    Covers:
    - Foreground coordinator operations (rate, duration, busy/failed/rejected)
    - Store gateway calls (rate, success/failure)
    - Purchase outcomes by store resolution
    - External transaction updates (granted or ignored)
    - Coordinator state gauges (loading, catalog size, entitlements)
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY, enabled: bool = True) -> None:
        """Initialize all Prometheus metrics."""
        self.enabled = enabled

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "purchase_helper",
            "Service information",
            registry=registry,
        )
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # Coordinator Operation Metrics
        # ====================================================================
        self.operations_total = Counter(
            "purchase_helper_operations_total",
            "Total foreground coordinator operations",
            [MetricLabels.OPERATION.value, MetricLabels.STATUS.value],
            registry=registry,
        )

        self.operation_duration_seconds = Histogram(
            "purchase_helper_operation_duration_seconds",
            "Foreground operation duration in seconds",
            [MetricLabels.OPERATION.value],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=registry,
        )

        self.loading_in_progress = Gauge(
            "purchase_helper_loading_in_progress",
            "1 while a foreground operation is outstanding",
            registry=registry,
        )

        # ====================================================================
        # Store Gateway Metrics
        # ====================================================================
        self.gateway_calls_total = Counter(
            "purchase_helper_gateway_calls_total",
            "Total calls made to the store backend",
            [MetricLabels.CALL.value, MetricLabels.SUCCESS.value],
            registry=registry,
        )

        self.purchase_outcomes_total = Counter(
            "purchase_helper_purchase_outcomes_total",
            "Purchase attempts by store resolution",
            [MetricLabels.RESOLUTION.value],
            registry=registry,
        )

        self.transactions_finished_total = Counter(
            "purchase_helper_transactions_finished_total",
            "Transactions finished with the store",
            registry=registry,
        )

        # ====================================================================
        # External Update Metrics
        # ====================================================================
        self.external_updates_total = Counter(
            "purchase_helper_external_updates_total",
            "Transaction updates delivered from outside the app",
            [MetricLabels.GRANTED.value],
            registry=registry,
        )

        # ====================================================================
        # State Metrics
        # ====================================================================
        self.catalog_size = Gauge(
            "purchase_helper_catalog_size",
            "Number of products in the fetched catalog",
            registry=registry,
        )

        self.entitlements_count = Gauge(
            "purchase_helper_entitlements",
            "Number of products the user currently owns",
            registry=registry,
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "purchase_helper_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
            registry=registry,
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_operation(self, operation: str, status: str, duration: float) -> None:
        """Record a finished (or rejected) foreground operation."""
        if not self.enabled:
            return
        self.operations_total.labels(operation=operation, status=status).inc()
        self.operation_duration_seconds.labels(operation=operation).observe(duration)

    def record_gateway_call(self, call: str, success: bool) -> None:
        if not self.enabled:
            return
        self.gateway_calls_total.labels(call=call, success=str(success)).inc()

    def record_purchase_outcome(self, resolution: str) -> None:
        if not self.enabled:
            return
        self.purchase_outcomes_total.labels(resolution=resolution).inc()

    def record_transaction_finished(self) -> None:
        if not self.enabled:
            return
        self.transactions_finished_total.inc()

    def record_external_update(self, granted: bool) -> None:
        if not self.enabled:
            return
        self.external_updates_total.labels(granted=str(granted)).inc()

    def set_state(self, loading: bool, catalog_size: int, entitlements: int) -> None:
        """Mirror coordinator state into gauges."""
        if not self.enabled:
            return
        self.loading_in_progress.set(1 if loading else 0)
        self.catalog_size.set(catalog_size)
        self.entitlements_count.set(entitlements)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        if not self.enabled:
            return
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = PurchaseHelperMetrics(enabled=settings.metrics_enabled)


class track_operation:
    """
    Context manager for timing a foreground operation.

    Usage:
        with track_operation("fetch_products") as tracker:
            # ... run the operation
            tracker.set_status("completed")
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.status = "completed"
        self.start_time: float = 0.0

    def set_status(self, status: str) -> None:
        """Set the operation status label."""
        self.status = status

    def __enter__(self) -> "track_operation":
        """Start tracking."""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.status = "error"
            metrics.record_error(exc_type.__name__, self.operation)
        metrics.record_operation(self.operation, self.status, duration)


def get_metrics_handler(registry: CollectorRegistry = REGISTRY) -> Callable[[], bytes]:
    """
    Get a Prometheus exposition callable for the app's own HTTP layer.

    Usage:
        handler = get_metrics_handler()
        body = handler()
    """
    from prometheus_client import generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(registry)

    return metrics_endpoint
