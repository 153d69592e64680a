# backend/callscribe/api/crm.py
"""Tenant-scoped HighLevel pass-throughs used by the dashboard."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from callscribe.api.errors import to_http_exception
from callscribe.auth.dependencies import get_current_tenant
from callscribe.auth.models import TenantIdentity
from callscribe.database import get_db
from callscribe.services.client_settings_service import ClientSettingsService, CredentialsNotConfigured
from callscribe.services.crm_gateway import CRMError, CRMGateway, get_crm_gateway, resolve_audio_url
from callscribe.services.transcript_store import TranscriptStore
from callscribe.utils.normalize import contact_display_name, message_type
from callscribe.utils.rate_limit import read_rate_limit

router = APIRouter(prefix="/api", tags=["crm"])


async def tenant_gateway(
    tenant: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    try:
        credentials = ClientSettingsService(db).credentials_for_tenant(tenant.tenant_id)
    except CredentialsNotConfigured as e:
        raise to_http_exception(e)

    gateway = get_crm_gateway(credentials)
    try:
        yield gateway
    finally:
        await gateway.aclose()


@router.get("/contacts")
@read_rate_limit()
async def list_contacts(request: Request, gateway: CRMGateway = Depends(tenant_gateway)):
    try:
        contacts = await gateway.list_contacts()
    except CRMError as e:
        raise to_http_exception(e)

    return {
        "contacts": [
            {
                "id": c.get("id"),
                "name": contact_display_name(c),
                "email": c.get("email"),
                "phone": c.get("phone"),
                "dateAdded": c.get("dateAdded"),
            }
            for c in contacts
        ]
    }


@router.get("/conversations")
@read_rate_limit()
async def list_conversations(
    request: Request,
    contact_id: Optional[str] = Query(default=None, alias="contactId"),
    gateway: CRMGateway = Depends(tenant_gateway),
):
    try:
        if contact_id:
            conversations = await gateway.list_conversations_for_contact(contact_id)
        else:
            conversations = await gateway.search_conversations()
    except CRMError as e:
        raise to_http_exception(e)
    return {"conversations": conversations}


@router.get("/calls")
@read_rate_limit()
async def list_calls(
    request: Request,
    contact_id: str = Query(alias="contactId", min_length=1),
    tenant: TenantIdentity = Depends(get_current_tenant),
    gateway: CRMGateway = Depends(tenant_gateway),
    db: Session = Depends(get_db),
):
    """Call messages for a contact, newest first, with their transcript status."""
    try:
        calls = await gateway.list_call_messages_for_contact(contact_id)
    except CRMError as e:
        raise to_http_exception(e)

    statuses = TranscriptStore(db).statuses_for_messages(tenant.tenant_id, [c.get("id") for c in calls])
    return {
        "calls": [
            {
                "id": c.get("id"),
                "conversationId": c.get("conversationId"),
                "dateAdded": c.get("dateAdded"),
                "direction": c.get("direction"),
                "status": c.get("status"),
                "hasRecording": resolve_audio_url(c) is not None,
                "transcriptStatus": statuses.get(c.get("id")),
            }
            for c in calls
        ],
        "count": len(calls),
    }


@router.get("/messages/{message_id}")
@read_rate_limit()
async def get_message(
    message_id: str,
    request: Request,
    gateway: CRMGateway = Depends(tenant_gateway),
):
    try:
        message = await gateway.fetch_message(message_id)
    except CRMError as e:
        raise to_http_exception(e)
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")

    return {
        "message": message,
        "messageType": message_type(message),
        "audioUrl": resolve_audio_url(message),
    }
