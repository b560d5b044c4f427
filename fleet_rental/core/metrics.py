import logging
import time
import uuid
from functools import wraps
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Prometheus Registry
REGISTRY = CollectorRegistry()

rental_operations_total = Counter(
    'fleet_rental_operations_total',
    'Total rental engine operations',
    ['status', 'service', 'method'],
    registry=REGISTRY
)

rental_operation_duration_seconds = Histogram(
    'fleet_rental_operation_duration_seconds',
    'Rental engine operation duration in seconds',
    ['service', 'method'],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=REGISTRY
)

pool_connections_in_use = Gauge(
    'fleet_rental_pool_connections_in_use',
    'Connections currently checked out of the pool',
    registry=REGISTRY
)

pool_exhausted_total = Counter(
    'fleet_rental_pool_exhausted_total',
    'Acquire calls that gave up waiting for a free connection',
    registry=REGISTRY
)


def _outcome(result) -> str:
    # OperationResult carries its own success flag; anything else counts as success
    success = getattr(result, "success", True)
    return "success" if success else "rejected"


def track_performance(service_name: Optional[str] = None):
    """
    Decorator to time an operation and record its outcome.

    Outcomes are ``success``, ``rejected`` (a failure result was returned)
    and ``error`` (an exception escaped).

    Usage:
    @track_performance(service_name="RentalEngine")
    def rent(self, vehicle_id, username=None):
        ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            correlation_id = str(uuid.uuid4())
            actual_service_name = service_name or (args[0].__class__.__name__ if args else "Unknown")
            method_name = func.__name__

            start_time = time.perf_counter()
            status = "error"
            try:
                result = func(*args, **kwargs)
                status = _outcome(result)
                return result
            finally:
                duration = time.perf_counter() - start_time
                rental_operations_total.labels(
                    status=status,
                    service=actual_service_name,
                    method=method_name
                ).inc()
                rental_operation_duration_seconds.labels(
                    service=actual_service_name,
                    method=method_name
                ).observe(duration)
                logger.info(
                    f"{actual_service_name}.{method_name} finished",
                    extra={
                        'correlation_id': correlation_id,
                        'service_name': actual_service_name,
                        'method_name': method_name,
                        'duration_ms': round(duration * 1000, 3),
                        'status': status,
                    }
                )

        return wrapper
    return decorator


def get_prometheus_metrics() -> bytes:
    """Get Prometheus metrics in text format"""
    return generate_latest(REGISTRY)
