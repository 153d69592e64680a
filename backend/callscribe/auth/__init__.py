# backend/callscribe/auth/__init__.py
"""
Authentication module for the callscribe API.

Verifies identity-provider JWTs for dashboard routes and the shared
secret for the internal trigger.
"""

from callscribe.auth.jwt_handler import (
    create_access_token,
    verify_token,
)
from callscribe.auth.dependencies import (
    get_current_tenant,
    require_internal_secret,
)
from callscribe.auth.models import TenantIdentity

__all__ = [
    "create_access_token",
    "verify_token",
    "get_current_tenant",
    "require_internal_secret",
    "TenantIdentity",
]
