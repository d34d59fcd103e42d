"""
Prometheus Metrics for the Inventory Reservation Service.

Covers:
1. HTTP request latency (p50, p95, p99), error rate and in-flight requests
2. Reservation outcomes per lifecycle transition
3. Per-key lock wait time
4. Expiry sweep throughput
5. Oversell incidents (must stay at zero)
"""

import time
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram, Info


# =============================================================================
# HTTP REQUEST METRICS
# =============================================================================

# Buckets chosen to capture p50 (~50ms), p95 (~200ms), p99 (~500ms)
HTTP_REQUEST_LATENCY = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['service', 'endpoint', 'method', 'status_code'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.15, 0.2, 0.3, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0]
)

HTTP_REQUEST_TOTAL = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['service', 'endpoint', 'method', 'status_code']
)

# High values indicate the service is struggling to keep up
HTTP_IN_FLIGHT_REQUESTS = Gauge(
    'http_in_flight_requests',
    'Number of HTTP requests currently being processed',
    ['service']
)

HTTP_ERRORS_TOTAL = Counter(
    'http_errors_total',
    'Total HTTP errors (4xx and 5xx)',
    ['service', 'endpoint', 'error_type']  # error_type: client_error, server_error
)


# =============================================================================
# RESERVATION METRICS
# =============================================================================

INVENTORY_RESERVATIONS_TOTAL = Counter(
    'inventory_reservations_total',
    'Reservation lifecycle transitions by outcome',
    ['operation', 'outcome']  # outcome: success, insufficient_stock, already_terminal, ...
)

RESERVATION_OPERATION_SECONDS = Histogram(
    'inventory_reservation_operation_seconds',
    'Reservation operation latency including lock wait',
    ['operation'],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

RESERVATION_LOCK_WAIT_SECONDS = Histogram(
    'inventory_reservation_lock_wait_seconds',
    'Time spent waiting for the per-key reservation lock',
    ['operation'],
    buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0]
)

# Oversell incidents - MUST be zero in production
INVENTORY_OVERSELL_INCIDENTS = Counter(
    'inventory_oversell_incidents_total',
    'Inventory oversell incidents (should always be 0)',
    ['stock_key']
)

RESERVATION_EVENTS_FAILED_TOTAL = Counter(
    'inventory_reservation_events_failed_total',
    'Lifecycle events that could not be published',
    ['event_type']
)


# =============================================================================
# SWEEPER METRICS
# =============================================================================

SWEEP_RUNS_TOTAL = Counter(
    'inventory_reservation_sweeps_total',
    'Expiry sweep runs',
    ['status']  # completed, failed
)

SWEEP_EXPIRED_TOTAL = Counter(
    'inventory_reservations_expired_total',
    'Reservations moved to expired by the sweeper'
)

SWEEP_DURATION_SECONDS = Histogram(
    'inventory_reservation_sweep_seconds',
    'Expiry sweep duration',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)


# =============================================================================
# SERVICE INFO
# =============================================================================

SERVICE_INFO = Info(
    'service',
    'Service information'
)


# =============================================================================
# HELPERS
# =============================================================================

@contextmanager
def track_reservation_operation(operation: str):
    """Context manager recording latency and outcome of a lifecycle operation."""
    start_time = time.time()
    outcome = "success"
    try:
        yield
    except Exception as e:
        outcome = getattr(e, "error_code", "error")
        raise
    finally:
        RESERVATION_OPERATION_SECONDS.labels(operation=operation).observe(time.time() - start_time)
        INVENTORY_RESERVATIONS_TOTAL.labels(operation=operation, outcome=outcome).inc()


def record_oversell_incident(stock_key: str):
    """Record an oversell incident - this should never happen!"""
    INVENTORY_OVERSELL_INCIDENTS.labels(stock_key=stock_key).inc()


def set_service_info(service: str, version: str, environment: str):
    """Set service information."""
    SERVICE_INFO.info({
        'service': service,
        'version': version,
        'environment': environment
    })
