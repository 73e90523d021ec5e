"""Middleware modules for production-ready features"""
from app.middleware.monitoring import (
    MonitoringMiddleware,
    record_auth_event,
    record_auth_failure,
    record_message_outcome,
)
from app.middleware.rate_limit import limiter, get_rate_limit

__all__ = [
    "MonitoringMiddleware",
    "record_auth_event",
    "record_auth_failure",
    "record_message_outcome",
    "limiter",
    "get_rate_limit"
]
