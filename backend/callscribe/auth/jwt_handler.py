# backend/callscribe/auth/jwt_handler.py
"""
JWT verification for dashboard sessions.

Tokens are issued by the identity provider and signed with the shared
JWT_SECRET_KEY (HS256). The `sub` claim is the tenant id.
"""

from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from jose import jwt, JWTError

from callscribe.config import settings
from callscribe.utils.logger import logger

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token signed with the shared secret.

    Used by local tooling and tests; production tokens come from the
    identity provider.
    """
    if not settings.JWT_SECRET_KEY:
        raise RuntimeError("JWT_SECRET_KEY is not configured")

    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "iat": datetime.utcnow()})
    if settings.JWT_AUDIENCE and "aud" not in to_encode:
        to_encode["aud"] = settings.JWT_AUDIENCE

    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify and decode a JWT token.

    Returns:
        Decoded payload if the signature, expiry and (when configured)
        audience check out, None otherwise.
    """
    if not settings.JWT_SECRET_KEY:
        logger.error("[auth] JWT_SECRET_KEY missing - rejecting all bearer tokens")
        return None

    options = {"verify_aud": bool(settings.JWT_AUDIENCE)}
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[ALGORITHM],
            audience=settings.JWT_AUDIENCE or None,
            options=options,
        )
    except JWTError:
        return None
