"""
Prometheus metrics for the Space Booking API

Metrics Categories:
- Reservations: admission attempts by outcome, conflicts, admission latency
- Installments: payments recorded
- Exchange rate: refreshes by source, current rate
- API: requests by route and status
"""
import time
from typing import Optional
from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)

# Custom registry (the app can be created several times in one test process)
registry = CollectorRegistry()

# ============================================================
# Reservation Metrics
# ============================================================

reservation_attempts_total = Counter(
    'reservation_attempts_total',
    'Total reservation admission attempts',
    ['operation', 'outcome'],  # create/update; admitted, overlapped, invalid_hours, ...
    registry=registry
)

reservation_conflicts_total = Counter(
    'reservation_conflicts_total',
    'Total admissions rejected because of an overlapping booking',
    [],
    registry=registry
)

reservation_admission_duration_seconds = Histogram(
    'reservation_admission_duration_seconds',
    'Time spent admitting a reservation (lock wait included)',
    ['operation'],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry
)

reservations_cancelled_total = Counter(
    'reservations_cancelled_total',
    'Total reservations cancelled by their owner',
    [],
    registry=registry
)

# ============================================================
# Installment Metrics
# ============================================================

installments_paid_total = Counter(
    'installments_paid_total',
    'Total installments marked as paid (idempotent repeats excluded)',
    [],
    registry=registry
)

# ============================================================
# Exchange Rate Metrics
# ============================================================

exchange_rate_refresh_total = Counter(
    'exchange_rate_refresh_total',
    'Total exchange rate refreshes',
    ['source'],  # fixed, http, fallback, error
    registry=registry
)

exchange_rate_gauge = Gauge(
    'exchange_rate_current',
    'Cached exchange rate (primary units per secondary unit)',
    [],
    registry=registry
)

# ============================================================
# API Metrics
# ============================================================

api_requests_total = Counter(
    'api_requests_total',
    'Total API requests',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)

api_request_duration_seconds = Histogram(
    'api_request_duration_seconds',
    'API request duration',
    ['method', 'endpoint'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry
)

# ============================================================
# Helper Functions
# ============================================================

class MetricsTimer:
    """Context manager for timing operations"""

    def __init__(self, histogram, labels: Optional[dict] = None):
        self.histogram = histogram
        self.labels = labels or {}
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.perf_counter() - self.start_time
        if self.labels:
            self.histogram.labels(**self.labels).observe(duration)
        else:
            self.histogram.observe(duration)


def track_reservation_attempt(operation: str, outcome: str):
    """Track a create/update admission attempt"""
    reservation_attempts_total.labels(operation=operation, outcome=outcome).inc()
    if outcome == "overlapped_reservation":
        reservation_conflicts_total.inc()


def track_reservation_cancelled():
    reservations_cancelled_total.inc()


def track_installment_paid():
    installments_paid_total.inc()


def track_api_request(method: str, endpoint: str, status_code: int, duration: Optional[float] = None):
    """Track API request"""
    api_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=str(status_code)
    ).inc()

    if duration is not None:
        api_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)


def get_metrics_text() -> bytes:
    """Get metrics in Prometheus text format"""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    """Get Prometheus content type"""
    return CONTENT_TYPE_LATEST
