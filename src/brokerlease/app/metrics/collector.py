"""Prometheus metrics definitions for the lease locker."""

from prometheus_client import Counter, Gauge, Histogram

# DB round trips (0.5ms ~ 5s), log scale ratio ≈ 2.15
_BUCKETS_FAST = (
    0.0005, 0.001, 0.002, 0.005, 0.01,
    0.02, 0.05, 0.1, 0.2, 0.5,
    1, 2, 5,
)  # 13 buckets

# =============================================================================
# Lease Metrics
# =============================================================================

LEASE_IS_HOLDER = Gauge(
    "brokerlease_lease_is_holder",
    "Whether this broker holds the lease (1 if holding, 0 if not)",
)

LEASE_KEEPALIVE_TOTAL = Counter(
    "brokerlease_lease_keepalive_total",
    "Lease keep-alive attempts by result",
    ["result"],  # acquired, rejected, error
)

LEASE_KEEPALIVE_DURATION = Histogram(
    "brokerlease_lease_keepalive_duration_seconds",
    "Lease keep-alive round trip time",
    buckets=_BUCKETS_FAST,
)

LEASE_STATE = Gauge(
    "brokerlease_lease_state",
    "Lease state of this broker (0=unclaimed, 1=holding, 2=fenced)",
)

# =============================================================================
# Failure Handling Metrics
# =============================================================================

IO_ERRORS_TOTAL = Counter(
    "brokerlease_io_errors_total",
    "Storage failures handed to the I/O handler by outcome",
    ["outcome"],  # ignored, connectors_stopped, broker_stopped
)

FENCED_TOTAL = Counter(
    "brokerlease_fenced_total",
    "Times this broker was fenced after losing the lease",
)
