# backend/callscribe/auth/dependencies.py
"""
FastAPI dependencies for authentication.

- get_current_tenant: dashboard routes, bearer JWT required
- require_internal_secret: internal trigger, shared-secret header required
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from callscribe.auth.jwt_handler import verify_token
from callscribe.auth.models import TenantIdentity
from callscribe.config import settings
from callscribe.utils.logger import logger

# Security schemes
bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_tenant(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> TenantIdentity:
    """
    Resolve the calling tenant from the bearer token.

    Raises:
        HTTPException: 401 when the token is missing, invalid or has no subject.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not credentials:
        raise credentials_exception

    payload = verify_token(credentials.credentials)
    if not payload:
        raise credentials_exception

    tenant_id = str(payload.get("sub") or "").strip()
    if not tenant_id:
        raise credentials_exception

    return TenantIdentity(tenant_id=tenant_id, email=payload.get("email"))


async def require_internal_secret(
    x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret"),
) -> None:
    expected = settings.INTERNAL_API_SECRET
    if not expected or not x_internal_secret or not hmac.compare_digest(x_internal_secret, expected):
        logger.warning("[auth] invalid internal secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
