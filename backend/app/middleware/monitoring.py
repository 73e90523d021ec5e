"""Monitoring and observability middleware"""
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from app.utils.logger import logger


# ===== Prometheus Metrics =====

# Request metrics
http_requests_total = Counter(
    "identity_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "identity_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"]
)

# Error metrics
http_errors_total = Counter(
    "identity_http_errors_total",
    "Total HTTP errors",
    ["method", "endpoint", "status"]
)

# Auth metrics
auth_events_total = Counter(
    "identity_auth_events_total",
    "Auth lifecycle events",
    ["event"]  # register, login, logout, refresh
)

authentication_failures_total = Counter(
    "identity_authentication_failures_total",
    "Total authentication failures",
    ["type"]  # invalid_credentials, invalid_token, revoked_token
)

# Messenger metrics
messenger_messages_total = Counter(
    "identity_messenger_messages_total",
    "Queued messages processed by the consumer",
    ["queue", "outcome"]  # delivered, retried, dead_lettered
)


class MonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware for monitoring and metrics collection"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and collect metrics"""
        start_time = time.perf_counter()

        # Extract request details
        method = request.method
        endpoint = request.url.path

        # Add request ID for tracing
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        request.state.request_id = request_id

        try:
            # Process request
            response = await call_next(request)
            status = response.status_code

            # Record metrics
            duration = time.perf_counter() - start_time
            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).inc()

            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint
            ).observe(duration)

            # Log slow requests
            if duration > 1.0:  # More than 1 second
                logger.warning(
                    f"Slow request detected: {method} {endpoint}",
                    extra={
                        "request_id": request_id,
                        "method": method,
                        "endpoint": endpoint,
                        "duration": duration,
                        "status": status
                    }
                )

            # Track errors
            if status >= 400:
                http_errors_total.labels(
                    method=method,
                    endpoint=endpoint,
                    status=status
                ).inc()

            # Add custom headers
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration:.3f}s"

            return response

        except Exception as e:
            # Record error metrics
            duration = time.perf_counter() - start_time
            http_errors_total.labels(
                method=method,
                endpoint=endpoint,
                status=500
            ).inc()

            logger.error(
                f"Request failed: {method} {endpoint}",
                extra={
                    "request_id": request_id,
                    "method": method,
                    "endpoint": endpoint,
                    "duration": duration,
                    "error": str(e)
                },
                exc_info=True
            )
            raise


def record_auth_event(event: str):
    """Record a successful auth lifecycle event"""
    auth_events_total.labels(event=event).inc()


def record_auth_failure(failure_type: str):
    """Record authentication failure"""
    authentication_failures_total.labels(type=failure_type).inc()


def record_message_outcome(queue: str, outcome: str):
    """Record what the consumer did with a claimed message"""
    messenger_messages_total.labels(queue=queue, outcome=outcome).inc()
