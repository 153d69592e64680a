# backend/callscribe/api/settings.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from callscribe.auth.dependencies import get_current_tenant
from callscribe.auth.models import TenantIdentity
from callscribe.database import get_db
from callscribe.services.client_settings_service import ClientSettingsService
from callscribe.utils.logger import logger

router = APIRouter(prefix="/api/settings", tags=["settings"])


class ClientSettingsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ghl_location_id: str = Field(alias="ghlLocationId", min_length=1, max_length=100)
    ghl_access_token: str = Field(alias="ghlAccessToken", min_length=1)


class ClientSettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    configured: bool
    ghlLocationId: Optional[str] = None
    hasAccessToken: bool = False
    updatedAt: Optional[datetime] = None


def _response(row) -> ClientSettingsResponse:
    if row is None:
        return ClientSettingsResponse(configured=False)
    return ClientSettingsResponse(
        configured=True,
        ghlLocationId=row.ghl_location_id,
        hasAccessToken=bool(row.ghl_access_token),
        updatedAt=row.updated_at,
    )


@router.get("", response_model=ClientSettingsResponse)
async def get_settings(
    tenant: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    # The access token itself is never sent back
    return _response(ClientSettingsService(db).get_by_tenant(tenant.tenant_id))


@router.put("", response_model=ClientSettingsResponse)
async def save_settings(
    payload: ClientSettingsUpdate,
    tenant: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    service = ClientSettingsService(db)
    other = service.get_by_location(payload.ghl_location_id.strip())
    if other is not None and other.tenant_id != tenant.tenant_id:
        raise HTTPException(status_code=409, detail="This HighLevel location is linked to another account")

    try:
        row = service.save(tenant.tenant_id, payload.ghl_location_id, payload.ghl_access_token)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"[settings] tenant {tenant.tenant_id} linked location {row.ghl_location_id}")
    return _response(row)
