# backend/callscribe/api/webhooks.py
"""
Inbound webhooks.

- HighLevel "call finished": resolve the tenant by location id, write the
  placeholder transcript, dispatch the pipeline, answer immediately.
- AssemblyAI completion callback: a trigger carrying only {transcript_id, status}.
"""
from json import JSONDecodeError

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from callscribe.config import settings
from callscribe.database import get_db
from callscribe.models.transcript import TranscriptStatus
from callscribe.pipelines.dispatch import trigger_completion, trigger_transcription
from callscribe.pipelines.transcription_pipeline import build_callback_url, create_placeholder
from callscribe.services.client_settings_service import ClientSettingsService, CredentialsNotConfigured
from callscribe.services.crm_gateway import CRMError, get_crm_gateway
from callscribe.services.speech_to_text import CALLBACK_SECRET_HEADER, verify_callback_secret
from callscribe.services.transcript_store import TranscriptOwnershipError, TranscriptStore
from callscribe.utils.logger import logger
from callscribe.utils.normalize import extract_call_event
from callscribe.utils.rate_limit import webhook_rate_limit

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return body


@router.post("/ghl-call-finished")
@webhook_rate_limit()
async def ghl_call_finished(request: Request, db: Session = Depends(get_db)):
    payload = await _json_body(request)
    event = extract_call_event(payload)
    logger.info(
        f"[webhook] call finished type={event.event_type} contact={event.contact_id} "
        f"message={event.message_id} location={event.location_id}"
    )

    if not event.contact_id or not event.location_id:
        raise HTTPException(status_code=400, detail="Missing required fields: contactId and locationId")

    try:
        credentials = ClientSettingsService(db).credentials_for_location(event.location_id)
    except CredentialsNotConfigured:
        logger.warning(f"[webhook] no tenant linked to location {event.location_id}")
        raise HTTPException(status_code=404, detail="No account is linked to this HighLevel location")

    message_id = event.message_id
    if not message_id:
        gateway = get_crm_gateway(credentials)
        try:
            message_id = await gateway.find_latest_call_message_id(event.contact_id)
        except CRMError as e:
            raise HTTPException(status_code=e.status_code, detail={"error": str(e), "details": e.details})
        finally:
            await gateway.aclose()
        if not message_id:
            raise HTTPException(status_code=404, detail="No call message found for this contact")
        logger.info(f"[webhook] using latest call message {message_id} for contact {event.contact_id}")

    store = TranscriptStore(db)
    existing = store.get_by_message_id(message_id)
    if existing is not None and existing.tenant_id != credentials.tenant_id:
        raise HTTPException(status_code=409, detail="Message belongs to another account")

    if existing is not None and existing.status == TranscriptStatus.COMPLETED.value:
        return {
            "success": True,
            "message": "Call already transcribed",
            "contactId": event.contact_id,
            "messageId": message_id,
        }
    if existing is not None and existing.status == TranscriptStatus.FAILED.value:
        return {
            "success": True,
            "message": "Previous transcription failed; retry it from the dashboard",
            "contactId": event.contact_id,
            "messageId": message_id,
        }

    try:
        transcript = create_placeholder(store, credentials, message_id, event.contact_id)
    except TranscriptOwnershipError:
        raise HTTPException(status_code=409, detail="Message belongs to another account")

    trigger_transcription(
        credentials.tenant_id,
        message_id,
        event.contact_id,
        build_callback_url(str(request.base_url)),
    )

    return {
        "success": True,
        "message": "Call received and queued for transcription",
        "contactId": event.contact_id,
        "messageId": message_id,
        "transcriptId": transcript.id,
    }


@router.get("/ghl-call-finished")
async def ghl_call_finished_info():
    return {
        "message": "HighLevel Call Finished Webhook Endpoint",
        "status": "active",
        "instructions": "Send POST requests with CallFinished events (contactId, locationId, optional messageId)",
    }


@router.post("/assemblyai-callback")
@webhook_rate_limit()
async def assemblyai_callback(request: Request, db: Session = Depends(get_db)):
    if not verify_callback_secret(request.headers.get(CALLBACK_SECRET_HEADER), settings.ASSEMBLYAI_WEBHOOK_SECRET):
        logger.warning("[webhook] transcription callback with bad or missing secret")
        raise HTTPException(status_code=401, detail="Unauthorized")

    if not settings.ASSEMBLYAI_API_KEY:
        logger.error("[webhook] missing AssemblyAI API key")
        raise HTTPException(status_code=500, detail="Server configuration error")

    payload = await _json_body(request)
    job_id = payload.get("transcript_id") or payload.get("job_id")
    if not job_id:
        raise HTTPException(status_code=400, detail="Missing transcript_id")
    logger.info(f"[webhook] transcription callback job_id={job_id} status={payload.get('status')}")

    transcript = TranscriptStore(db).get_by_job_id(job_id)
    if transcript is None:
        logger.warning(f"[webhook] no transcript record for job_id={job_id}")
        return {"success": False, "error": "No existing transcript record found", "transcript_id": job_id}

    if transcript.status != TranscriptStatus.PROCESSING.value:
        return {"success": True, "message": f"Transcript already {transcript.status}", "transcript_id": job_id}

    trigger_completion(job_id)
    return {"success": True, "message": "Completion received", "transcript_id": job_id}


@router.get("/assemblyai-callback")
async def assemblyai_callback_info():
    return {
        "message": "AssemblyAI Webhook Endpoint",
        "status": "active",
        "instructions": "This endpoint receives POST requests from AssemblyAI when transcriptions complete",
    }
