"""
Prometheus metrics for the booking and payment core.

A dedicated registry keeps these series separate from the process defaults;
``/metrics`` renders it.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "consultbook_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "consultbook_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "consultbook_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

reservation_outcomes_total = Counter(
    "consultbook_reservation_outcomes_total",
    "Slot reservation attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

settlement_outcomes_total = Counter(
    "consultbook_settlement_outcomes_total",
    "Payment settlement attempts by signal source and outcome",
    ["source", "outcome"],
    registry=REGISTRY,
)

gateway_call_duration_seconds = Histogram(
    "consultbook_gateway_call_duration_seconds",
    "Remote provider call duration in seconds",
    ["operation", "status"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0),
)

outbox_deliveries_total = Counter(
    "consultbook_outbox_deliveries_total",
    "Outbox delivery attempts by event type and status",
    ["event_type", "status"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin facade so call sites do not touch label plumbing."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str,
        error_type: Optional[str] = None,
    ) -> None:
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_reservation(outcome: str) -> None:
        reservation_outcomes_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_settlement(source: str, outcome: str) -> None:
        settlement_outcomes_total.labels(source=source, outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration: float) -> None:
        gateway_call_duration_seconds.labels(operation=operation, status=status).observe(duration)

    @staticmethod
    def record_outbox_delivery(event_type: str, status: str) -> None:
        outbox_deliveries_total.labels(event_type=event_type, status=status).inc()

    @staticmethod
    def get_metrics() -> bytes:
        return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()
