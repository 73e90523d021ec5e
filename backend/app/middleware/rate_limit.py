"""Rate limiting middleware for API protection"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request
from app.config import settings


def get_identifier(request: Request) -> str:
    """
    Get identifier for rate limiting

    Priority:
    1. Forwarded client address (only when behind a trusted proxy)
    2. Socket peer address
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and settings.TRUST_PROXY_HEADERS:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


# Create limiter instance
limiter = Limiter(
    key_func=get_identifier,
    default_limits=settings.RATE_LIMIT_DEFAULT,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    strategy="fixed-window",
    enabled=settings.RATE_LIMIT_ENABLED,
)


# Rate limit configurations for different endpoints
RATE_LIMITS = {
    # Credential endpoints - brute-force targets
    "register": settings.RATE_LIMIT_AUTH,
    "login": settings.RATE_LIMIT_AUTH,
    "refresh": settings.RATE_LIMIT_AUTH,
    "password_reset": "5/minute",

    # Public endpoints
    "health": "100/minute",
}


def get_rate_limit(endpoint: str) -> str:
    """Get rate limit for specific endpoint"""
    return RATE_LIMITS.get(endpoint, settings.RATE_LIMIT_DEFAULT[0])
