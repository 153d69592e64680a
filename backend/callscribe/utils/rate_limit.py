# backend/callscribe/utils/rate_limit.py
"""
Rate limiting for API endpoints (slowapi, keyed on client address).

Decorated endpoints must accept a `request: Request` parameter.
"""

from typing import Callable

from slowapi import Limiter
from slowapi.util import get_remote_address

from callscribe.config import settings

# Shared limiter instance, attached to app.state in main
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)


def get_limiter() -> Limiter:
    """Get the shared limiter instance."""
    return limiter


def rate_limit(limit_string: str) -> Callable:
    """
    Rate limiting decorator.

    Args:
        limit_string: Rate limit string (e.g., "60/minute", "10/hour")
    """
    return limiter.limit(limit_string)


# Pre-configured rate limits for different endpoint types
RATE_LIMITS = {
    "webhook": "120/minute",      # Inbound webhooks (HighLevel, AssemblyAI)
    "user_action": "30/minute",   # User-initiated pipeline runs
    "read": "200/minute",         # Read operations (list, get)
    "expensive": "10/minute",     # LLM-backed operations
}


def webhook_rate_limit() -> Callable:
    """Rate limit for inbound webhooks."""
    return rate_limit(RATE_LIMITS["webhook"])


def user_action_rate_limit() -> Callable:
    """Rate limit for user-initiated actions."""
    return rate_limit(RATE_LIMITS["user_action"])


def read_rate_limit() -> Callable:
    """Rate limit for read operations."""
    return rate_limit(RATE_LIMITS["read"])


def expensive_rate_limit() -> Callable:
    """Rate limit for expensive operations (AI analysis)."""
    return rate_limit(RATE_LIMITS["expensive"])
