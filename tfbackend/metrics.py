"""Centralised Prometheus metric definitions for the state backend."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


REQUESTS_TOTAL = Counter(
    "tfbackend_requests_total",
    "State requests handled, by verb and response status",
    labelnames=["method", "status"],
)

REQUEST_DURATION = Histogram(
    "tfbackend_request_duration_seconds",
    "Latency distribution for state requests",
    labelnames=["method"],
)

LOCK_CONFLICTS_TOTAL = Counter(
    "tfbackend_lock_conflicts_total",
    "Requests rejected because another holder owns the lock",
    labelnames=["method"],
)

STORAGE_ERRORS = Counter(
    "tfbackend_storage_errors_total",
    "Failed storage operations",
    labelnames=["operation"],
)

STORAGE_OPERATION_DURATION = Histogram(
    "tfbackend_storage_operation_duration_seconds",
    "Latency distribution for storage operations",
    labelnames=["operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5],
)


__all__ = [
    "LOCK_CONFLICTS_TOTAL",
    "REQUESTS_TOTAL",
    "REQUEST_DURATION",
    "STORAGE_ERRORS",
    "STORAGE_OPERATION_DURATION",
]
