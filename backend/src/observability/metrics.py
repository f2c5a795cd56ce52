"""Prometheus metrics for the integration service.

Defines operational metrics for provider calls, credential lifecycle,
synchronization and webhook intake.
"""

from prometheus_client import Counter, Histogram, Gauge

# Provider call metrics
provider_calls_total = Counter(
    "integration_provider_calls_total",
    "Total outbound provider calls",
    ["provider", "operation", "outcome"]  # outcome: success|auth_error|unavailable|rate_limited|error
)

provider_call_latency_ms = Histogram(
    "integration_provider_call_latency_ms",
    "Provider call latency in milliseconds",
    ["provider", "operation"],
    buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000]
)

# Credential lifecycle metrics
token_refresh_total = Counter(
    "integration_token_refresh_total",
    "OAuth token refresh attempts",
    ["provider", "outcome"]  # outcome: success|revoked|expired|unavailable
)

connection_transitions_total = Counter(
    "integration_connection_transitions_total",
    "Connection status transitions",
    ["from_status", "to_status"]
)

# Sync metrics
sync_operations_total = Counter(
    "integration_sync_operations_total",
    "Finished sync operations",
    ["provider", "status"]  # status: SUCCESS|PARTIAL_FAILURE|FAILED
)

sync_conflicts_total = Counter(
    "integration_sync_conflicts_total",
    "Sync requests rejected because a sync was already in flight",
    ["provider"]
)

sync_duration_seconds = Histogram(
    "integration_sync_duration_seconds",
    "Wall time of a sync operation in seconds",
    ["provider"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

sync_records_total = Counter(
    "integration_sync_records_total",
    "Records pulled during sync",
    ["provider", "entity_type", "result"]  # result: applied|stale
)

syncs_in_flight = Gauge(
    "integration_syncs_in_flight",
    "Sync operations currently running in this process"
)

# Webhook metrics
webhooks_total = Counter(
    "integration_webhooks_total",
    "Inbound webhook deliveries by outcome",
    ["provider", "outcome"]  # outcome: published|revoked|duplicate|bad_signature|unresolved|stale|ignored|malformed
)
