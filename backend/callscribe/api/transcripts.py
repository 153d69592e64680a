# backend/callscribe/api/transcripts.py
"""
Dashboard transcript endpoints. Every query is scoped to the caller's tenant;
records of other tenants answer 404.
"""
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from callscribe.api.errors import DOMAIN_ERRORS, to_http_exception
from callscribe.auth.dependencies import get_current_tenant
from callscribe.auth.models import TenantIdentity
from callscribe.database import get_db
from callscribe.models.transcript import TranscriptStatus
from callscribe.pipelines.transcription_pipeline import (
    TranscriptionOrchestrator,
    build_callback_url,
    get_orchestrator,
)
from callscribe.services.speech_to_text import SpeechToTextError
from callscribe.services.transcript_store import TranscriptStore, merge_speaker_turns
from callscribe.utils.logger import logger
from callscribe.utils.rate_limit import expensive_rate_limit, read_rate_limit, user_action_rate_limit

router = APIRouter(prefix="/api", tags=["transcripts"])


# =============================================================================
# Schemas
# =============================================================================

class TranscribeCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId", min_length=1)
    contact_id: Optional[str] = Field(default=None, alias="contactId")


class ReanalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId", min_length=1)


class ChatTurn(BaseModel):
    role: Literal["user", "ai"]
    text: str


class AskAIRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId", min_length=1)
    question: str = Field(min_length=1, max_length=2000)
    history: List[ChatTurn] = Field(default_factory=list, alias="conversationHistory")


# =============================================================================
# Pipeline entry points
# =============================================================================

@router.post("/transcribe-call")
@user_action_rate_limit()
async def transcribe_call(
    payload: TranscribeCallRequest,
    request: Request,
    tenant: TenantIdentity = Depends(get_current_tenant),
    orchestrator: TranscriptionOrchestrator = Depends(get_orchestrator),
):
    """
    Manual transcription: placeholder, audio resolution and submission run
    inline so problems (no recording, bad token) are reported to the user.
    Completion still arrives through the provider callback.
    """
    try:
        credentials = orchestrator.resolve_credentials(tenant_id=tenant.tenant_id)
        existing = orchestrator.store.get_by_message_id(payload.message_id)
        if existing is not None and existing.tenant_id != tenant.tenant_id:
            raise HTTPException(status_code=404, detail="Transcript not found")
        transcript = await orchestrator.start_transcription(
            credentials,
            payload.message_id,
            payload.contact_id,
            build_callback_url(str(request.base_url)),
            manual_retry=True,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e)

    return {"success": True, "transcript": transcript.to_dict()}


@router.post("/transcripts/{message_id}/retry")
@user_action_rate_limit()
async def retry_transcript(
    message_id: str,
    request: Request,
    tenant: TenantIdentity = Depends(get_current_tenant),
    orchestrator: TranscriptionOrchestrator = Depends(get_orchestrator),
):
    try:
        transcript = await orchestrator.retry(message_id, tenant.tenant_id, build_callback_url(str(request.base_url)))
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e)
    return {"success": True, "transcript": transcript.to_dict()}


@router.post("/reanalyze-transcript")
@expensive_rate_limit()
async def reanalyze_transcript(
    payload: ReanalyzeRequest,
    request: Request,
    tenant: TenantIdentity = Depends(get_current_tenant),
    orchestrator: TranscriptionOrchestrator = Depends(get_orchestrator),
):
    try:
        transcript = await orchestrator.reanalyze(payload.message_id, tenant.tenant_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e)
    return {"success": True, "transcript": transcript.to_dict()}


@router.post("/ask-ai")
@expensive_rate_limit()
async def ask_ai(
    payload: AskAIRequest,
    request: Request,
    tenant: TenantIdentity = Depends(get_current_tenant),
    orchestrator: TranscriptionOrchestrator = Depends(get_orchestrator),
):
    try:
        transcript = orchestrator.store.require(payload.message_id, tenant.tenant_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e)

    if transcript.status != TranscriptStatus.COMPLETED.value or not transcript.speakers:
        raise HTTPException(status_code=400, detail="Transcript is not ready yet")

    answer = await orchestrator.analysis.answer_question(
        payload.question,
        transcript.full_text,
        transcript.speakers,
        [turn.model_dump() for turn in payload.history],
    )
    return {"answer": answer}


@router.get("/transcribe/{job_id}/status")
@read_rate_limit()
async def transcription_job_status(
    job_id: str,
    request: Request,
    tenant: TenantIdentity = Depends(get_current_tenant),
    orchestrator: TranscriptionOrchestrator = Depends(get_orchestrator),
):
    """Ask the provider directly how a job is doing. Read-only."""
    transcript = orchestrator.store.get_by_job_id(job_id)
    if transcript is None or transcript.tenant_id != tenant.tenant_id:
        raise HTTPException(status_code=404, detail="Transcription job not found")

    try:
        result = await orchestrator.stt.fetch_normalized(job_id)
    except SpeechToTextError as e:
        raise to_http_exception(e)

    return {
        "jobId": job_id,
        "messageId": transcript.message_id,
        "providerStatus": result.status,
        "error": result.error,
        "transcriptStatus": transcript.status,
        "stage": transcript.stage,
    }


# =============================================================================
# Reads / admin
# =============================================================================

@router.get("/transcripts")
@read_rate_limit()
async def list_transcripts(
    request: Request,
    contact_id: Optional[str] = Query(default=None, alias="contactId"),
    tenant: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    rows = TranscriptStore(db).list_for_tenant(tenant.tenant_id, contact_id=contact_id)
    return {"transcripts": [t.to_dict() for t in rows], "count": len(rows)}


@router.get("/transcripts/merged")
@read_rate_limit()
async def merged_transcript(
    request: Request,
    contact_id: str = Query(alias="contactId", min_length=1),
    tenant: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    """All completed calls of a contact as one timeline."""
    rows = [
        t for t in TranscriptStore(db).list_for_tenant(tenant.tenant_id, contact_id=contact_id)
        if t.status == TranscriptStatus.COMPLETED.value
    ]
    return {
        "contactId": contact_id,
        "messageIds": [t.message_id for t in sorted(rows, key=lambda t: t.created_at)],
        "speakers": merge_speaker_turns(rows),
    }


@router.get("/transcripts/{message_id}")
@read_rate_limit()
async def get_transcript(
    message_id: str,
    request: Request,
    tenant: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    try:
        return TranscriptStore(db).require(message_id, tenant.tenant_id).to_dict()
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e)


@router.delete("/transcripts/{message_id}")
async def delete_transcript(
    message_id: str,
    tenant: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    if not TranscriptStore(db).delete(message_id, tenant.tenant_id):
        raise HTTPException(status_code=404, detail="Transcript not found")
    logger.info(f"[transcripts] tenant {tenant.tenant_id} deleted message_id={message_id}")
    return {"success": True, "messageId": message_id}
