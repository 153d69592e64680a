# backend/callscribe/auth/models.py
"""
Authentication models.
"""

from typing import Optional

from pydantic import BaseModel


class TenantIdentity(BaseModel):
    """The verified caller. One tenant owns one CRM credential set."""
    tenant_id: str
    email: Optional[str] = None
