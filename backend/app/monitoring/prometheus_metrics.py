"""
Prometheus metrics for the booking core.

Service timings come from the @measure_operation decorator; lifecycle counters
are recorded by the services at the point a transition is persisted.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry keeps process-level default collectors out of the payload
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "kitchenhub_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "kitchenhub_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "kitchenhub_errors_total",
    "Total number of service errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

booking_lock_total = Counter(
    "kitchenhub_booking_lock_total",
    "Booking group mutex operations by outcome",
    ["action", "outcome"],
    registry=REGISTRY,
)

payment_processor_calls_total = Counter(
    "kitchenhub_payment_processor_calls_total",
    "Payment processor calls by operation and outcome",
    ["operation", "outcome"],  # outcome: success | retry | declined | exhausted
    registry=REGISTRY,
)

lifecycle_transitions_total = Counter(
    "kitchenhub_lifecycle_transitions_total",
    "Persisted status transitions per state machine",
    ["machine", "from_status", "to_status"],
    registry=REGISTRY,
)

sweep_items_total = Counter(
    "kitchenhub_sweep_items_total",
    "Items touched by scheduled sweeps",
    ["sweep", "outcome"],  # outcome: applied | skipped | failed
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin recording facade so callers never touch metric objects directly."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_booking_lock(action: str, outcome: str) -> None:
        booking_lock_total.labels(action=action, outcome=outcome).inc()

    @staticmethod
    def record_processor_call(operation: str, outcome: str) -> None:
        payment_processor_calls_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_transition(machine: str, from_status: Optional[str], to_status: str) -> None:
        lifecycle_transitions_total.labels(
            machine=machine, from_status=from_status or "none", to_status=to_status
        ).inc()

    @staticmethod
    def record_sweep_item(sweep: str, outcome: str) -> None:
        sweep_items_total.labels(sweep=sweep, outcome=outcome).inc()

    @staticmethod
    def get_metrics() -> bytes:
        return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()
