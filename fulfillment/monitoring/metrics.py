"""
Prometheus metrics for fulfillment orchestration monitoring.

Tracks:
- Orchestration step outcomes (payment, confirmation, invoice, shipment)
- Provider API calls and their latency
- Rate limiter decisions
- Shipment fallbacks to placeholder tracking numbers
- External effects that could not be recorded locally
"""
from prometheus_client import Counter, Histogram

# Orchestration metrics
orchestration_steps_total = Counter(
    "orchestration_steps_total",
    "Total orchestration step invocations",
    ["step", "outcome"],  # outcome: success, idempotent, rejected, error
)

orchestration_step_duration_seconds = Histogram(
    "orchestration_step_duration_seconds",
    "Orchestration step duration in seconds",
    ["step"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Provider API metrics
provider_requests_total = Counter(
    "provider_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],  # status: ok, rejected, unavailable
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

# Rate limiting metrics
rate_limit_decisions_total = Counter(
    "rate_limit_decisions_total",
    "Rate limiter decisions",
    ["operation", "decision"],  # allowed, denied, backend_error
)

# Shipment metrics
shipment_fallbacks_total = Counter(
    "shipment_fallbacks_total",
    "Shipments created with a placeholder tracking number",
    ["carrier"],
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Gateway callbacks handled",
    ["provider", "status"],  # applied, duplicate, failed
)

# Consistency metrics
orphaned_external_effects_total = Counter(
    "orphaned_external_effects_total",
    "Provider side effects that succeeded but were not recorded locally",
    ["kind"],  # payment, invoice_document, shipment
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_step(step: str, outcome: str, duration_seconds: float = 0) -> None:
        """Record an orchestration step outcome."""
        orchestration_steps_total.labels(step=step, outcome=outcome).inc()
        if duration_seconds > 0:
            orchestration_step_duration_seconds.labels(step=step).observe(duration_seconds)

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a provider API call."""
        provider_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_request_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def record_rate_limit(operation: str, decision: str) -> None:
        rate_limit_decisions_total.labels(operation=operation, decision=decision).inc()

    @staticmethod
    def record_shipment_fallback(carrier: str) -> None:
        shipment_fallbacks_total.labels(carrier=carrier).inc()

    @staticmethod
    def record_webhook_event(provider: str, status: str) -> None:
        webhook_events_total.labels(provider=provider, status=status).inc()

    @staticmethod
    def record_orphaned_effect(kind: str) -> None:
        orphaned_external_effects_total.labels(kind=kind).inc()


# Export singleton instance
metrics = MetricsCollector()
