"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Admission control metrics
admission_requests = Counter(
    'queue_admission_requests_total',
    'Total admission checks by outcome',
    ['result']  # admitted, waiting, bypassed, replayed
)

admission_latency = Histogram(
    'queue_admission_check_latency_seconds',
    'Admission check latency',
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25]
)

extension_requests = Counter(
    'queue_extension_requests_total',
    'Session extension attempts',
    ['result']  # granted, not_found, invalid_state, already_used, not_allowed
)

session_transitions = Counter(
    'queue_session_transitions_total',
    'Explicit session status reports from the registration flow',
    ['status']  # completed, abandoned
)

# Sweeper metrics
sweep_expired = Counter(
    'queue_sweep_expired_total',
    'Active sessions expired by the sweeper'
)

sweep_promoted = Counter(
    'queue_sweep_promoted_total',
    'Waiting sessions promoted to active by the sweeper'
)

sweep_duration = Histogram(
    'queue_sweep_duration_seconds',
    'Sweep pass duration',
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0]
)

sweep_failures = Counter(
    'queue_sweep_failures_total',
    'Sweep passes that raised'
)

# Occupancy gauges, refreshed by the stats reporter
lane_active_sessions = Gauge(
    'queue_lane_active_sessions',
    'Live active sessions per lane',
    ['resource_id', 'lane']
)

lane_waiting_sessions = Gauge(
    'queue_lane_waiting_sessions',
    'Waiting sessions per lane',
    ['resource_id', 'lane']
)

# Cache metrics
cache_operations = Counter(
    'queue_settings_cache_operations_total',
    'Settings cache operations',
    ['operation', 'result']  # get: hit/miss, set: stored
)

redis_connection_errors = Counter(
    'redis_connection_errors_total',
    'Redis connection errors'
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_admission(result: str):
    """Record admission decision. Result: admitted, waiting, bypassed, replayed"""
    admission_requests.labels(result=result).inc()


def record_extension(result: str):
    extension_requests.labels(result=result).inc()


def record_transition(status: str):
    session_transitions.labels(status=status).inc()


def record_sweep(expired: int, promoted: int):
    """Record the outcome of one sweep pass."""
    if expired:
        sweep_expired.inc(expired)
    if promoted:
        sweep_promoted.inc(promoted)


def record_lane_occupancy(resource_id: str, lane: str, active: int, waiting: int):
    lane_active_sessions.labels(resource_id=resource_id, lane=lane).set(active)
    lane_waiting_sessions.labels(resource_id=resource_id, lane=lane).set(waiting)


def record_cache_operation(operation: str, result: str):
    """Record cache operation. Result: hit, miss (get) or stored (set)"""
    cache_operations.labels(operation=operation, result=result).inc()
