"""Prometheus metrics - minimal implementation."""
from prometheus_client import Counter, Gauge, Histogram

# Proxied requests by final outcome
requests_total = Counter(
    "keyrelay_requests_total",
    "Total proxied chat-completion requests",
    ["outcome", "status"],
)

# Request latency histogram (time to upstream response headers)
request_latency_ms = Histogram(
    "keyrelay_request_latency_ms",
    "Request latency in milliseconds",
    ["outcome"],
    buckets=[10, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 30000, 60000],
)

# Raw upstream responses, one per attempt
upstream_responses_total = Counter(
    "keyrelay_upstream_responses_total",
    "Upstream responses by status code",
    ["status"],
)

# Errors raised before or instead of an upstream response
errors_total = Counter(
    "keyrelay_errors_total",
    "Total errors",
    ["error_code"],
)

# Pool state transitions
credential_transitions_total = Counter(
    "keyrelay_credential_transitions_total",
    "Credential state transitions (cooldown, invalid, inactive, active)",
    ["transition"],
)

model_evictions_total = Counter(
    "keyrelay_model_evictions_total",
    "Models removed from the pool",
    ["reason"],
)

selection_exhausted_total = Counter(
    "keyrelay_selection_exhausted_total",
    "Requests that found no credential or model to use",
    ["reason"],
)

# Write-back flushes
flushes_total = Counter(
    "keyrelay_flushes_total",
    "Write-back flush runs",
    ["result"],
)

flushed_entities_total = Counter(
    "keyrelay_flushed_entities_total",
    "Entities written by successful flushes",
    ["kind"],
)

# Pool sizes
usable_credentials = Gauge(
    "keyrelay_usable_credentials",
    "Active credentials currently in rotation",
)

model_pool_size = Gauge(
    "keyrelay_model_pool_size",
    "Models currently in the pool",
)
