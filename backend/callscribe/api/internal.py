# backend/callscribe/api/internal.py
"""
Internal transcription trigger.

Not user facing: protected by the X-Internal-Secret header instead of a
session. Answers as soon as the job is dispatched; the outcome is visible
only on the transcript record.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from callscribe.auth.dependencies import require_internal_secret
from callscribe.config import settings
from callscribe.database import get_db
from callscribe.models.transcript import TranscriptStatus
from callscribe.pipelines.dispatch import trigger_transcription
from callscribe.pipelines.transcription_pipeline import build_callback_url, create_placeholder
from callscribe.services.client_settings_service import ClientSettingsService, CredentialsNotConfigured
from callscribe.services.transcript_store import TranscriptStore
from callscribe.utils.logger import logger

router = APIRouter(prefix="/api/internal", tags=["internal"])


class InternalTranscribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId", min_length=1)
    contact_id: Optional[str] = Field(default=None, alias="contactId")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    location_id: Optional[str] = Field(default=None, alias="locationId")


@router.post("/transcribe", status_code=202, dependencies=[Depends(require_internal_secret)])
async def internal_transcribe(
    payload: InternalTranscribeRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    if not settings.ASSEMBLYAI_API_KEY:
        raise HTTPException(status_code=500, detail="Missing AssemblyAI API key. Please contact support.")

    client_settings = ClientSettingsService(db)
    try:
        if payload.tenant_id:
            credentials = client_settings.credentials_for_tenant(payload.tenant_id)
        elif payload.location_id:
            credentials = client_settings.credentials_for_location(payload.location_id)
        else:
            raise HTTPException(status_code=400, detail="tenantId or locationId is required")
    except CredentialsNotConfigured as e:
        raise HTTPException(status_code=404, detail=str(e))

    store = TranscriptStore(db)
    existing = store.get_by_message_id(payload.message_id)
    if existing is not None and existing.tenant_id != credentials.tenant_id:
        raise HTTPException(status_code=404, detail="Transcript not found")
    if existing is not None and existing.status != TranscriptStatus.PROCESSING.value:
        raise HTTPException(
            status_code=409,
            detail=f"Transcript is already {existing.status}; use the dashboard retry to run it again",
        )
    if existing is None:
        create_placeholder(store, credentials, payload.message_id, payload.contact_id)

    trigger_transcription(
        credentials.tenant_id,
        payload.message_id,
        payload.contact_id or (existing.contact_id if existing else None),
        build_callback_url(str(request.base_url)),
    )
    logger.info(f"[internal] dispatched transcription for message_id={payload.message_id}")

    return {
        "success": True,
        "messageId": payload.message_id,
        "contactId": payload.contact_id,
        "status": TranscriptStatus.PROCESSING.value,
    }
