# backend/callscribe/services/client_settings_service.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from callscribe.database import safe_commit
from callscribe.models.client_settings import ClientSettings


class CredentialsNotConfigured(Exception):
    """The tenant has not saved CRM credentials yet."""


@dataclass(frozen=True)
class TenantCredentials:
    tenant_id: str
    location_id: str
    access_token: str

    def __repr__(self) -> str:
        # never print the token
        return f"TenantCredentials(tenant_id={self.tenant_id!r}, location_id={self.location_id!r})"


def _to_credentials(row: ClientSettings) -> TenantCredentials:
    return TenantCredentials(
        tenant_id=row.tenant_id,
        location_id=row.ghl_location_id,
        access_token=row.ghl_access_token,
    )


class ClientSettingsService:
    def __init__(self, db: Session):
        self.db = db

    def get_by_tenant(self, tenant_id: str) -> Optional[ClientSettings]:
        if not tenant_id:
            return None
        return self.db.query(ClientSettings).filter(ClientSettings.tenant_id == tenant_id).first()

    def get_by_location(self, location_id: str) -> Optional[ClientSettings]:
        if not location_id:
            return None
        return self.db.query(ClientSettings).filter(ClientSettings.ghl_location_id == location_id).first()

    def credentials_for_tenant(self, tenant_id: str) -> TenantCredentials:
        row = self.get_by_tenant(tenant_id)
        if row is None:
            raise CredentialsNotConfigured(f"No CRM credentials saved for tenant {tenant_id}")
        return _to_credentials(row)

    def credentials_for_location(self, location_id: str) -> TenantCredentials:
        row = self.get_by_location(location_id)
        if row is None:
            raise CredentialsNotConfigured(f"No tenant is linked to CRM location {location_id}")
        return _to_credentials(row)

    def save(self, tenant_id: str, location_id: str, access_token: str) -> ClientSettings:
        """Insert or update the tenant's single settings record."""
        location_id = (location_id or "").strip()
        access_token = (access_token or "").strip()
        if not location_id or not access_token:
            raise ValueError("location_id and access_token are required")

        row = self.get_by_tenant(tenant_id)
        if row is None:
            row = ClientSettings(tenant_id=tenant_id)
            self.db.add(row)
        row.ghl_location_id = location_id
        row.ghl_access_token = access_token

        ok, error = safe_commit(self.db, "save client settings")
        if not ok:
            raise ValueError(error)
        self.db.refresh(row)
        return row
