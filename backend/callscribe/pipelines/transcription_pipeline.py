# backend/callscribe/pipelines/transcription_pipeline.py
"""
Drives one call recording from "call finished" to "analyzed and stored".

    placeholder -> resolve audio -> submit to speech-to-text
        ... provider callback (or reconcile sweep) ...
    fetch result -> analyze -> store completed -> note on CRM contact

Every step records its progress in `Transcript.stage`. Failures up to and
including submission, and permanent provider errors when fetching the
result, end the record in `failed` with a readable summary;
the CRM note is best-effort and never changes the record's status.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from fastapi import Depends
from sqlalchemy.orm import Session

from callscribe.config import settings
from callscribe.database import get_db, get_db_context
from callscribe.models.transcript import PipelineStage, Transcript, TranscriptStatus
from callscribe.services.analysis_engine import AnalysisEngine
from callscribe.services.client_settings_service import (
    ClientSettingsService,
    CredentialsNotConfigured,
    TenantCredentials,
)
from callscribe.services.crm_gateway import CRMError, CRMGateway, CRMNotFoundError, resolve_audio_url
from callscribe.services.speech_to_text import (
    NormalizedTranscript,
    SpeechToTextClient,
    SpeechToTextError,
    SpeechToTextNotConfigured,
)
from callscribe.services.transcript_store import TranscriptStore, new_placeholder_id
from callscribe.utils.logger import logger

CALLBACK_PATH = "/api/webhooks/assemblyai-callback"

NO_RECORDING_GUIDANCE = (
    "The message does not have a recording URL in attachments. This could mean:\n\n"
    "1. Call recording is not enabled in HighLevel settings\n"
    "2. The recording is still processing (wait 30-60 seconds after call ends)\n"
    "3. The call was too short to generate a recording\n\n"
    "Please check your HighLevel settings and try again in a minute."
)


class NoRecordingAvailable(Exception):
    """No audio could be resolved for a call message. Expected, not a bug."""

    def __init__(self, message_id: str):
        super().__init__(f"No audio recording found for message {message_id}")
        self.message_id = message_id
        self.guidance = NO_RECORDING_GUIDANCE


class ReanalysisRejected(Exception):
    pass


def build_callback_url(request_base_url: Optional[str] = None) -> Optional[str]:
    base = (settings.PUBLIC_BASE_URL or request_base_url or "").strip().rstrip("/")
    if not base:
        return None
    return f"{base}{CALLBACK_PATH}"


def _is_permanent(error: SpeechToTextError) -> bool:
    # 429 and 5xx clear up on their own; the sweep polls those again
    return 400 <= error.status_code < 500 and error.status_code != 429


def create_placeholder(
    store: TranscriptStore,
    credentials: TenantCredentials,
    message_id: str,
    contact_id: Optional[str],
    *,
    manual_retry: bool = False,
) -> Transcript:
    """
    Write a fresh `processing` record for the call, wiping any earlier
    content. `created_at` of an existing record survives.
    """
    return store.save_transcript(
        {
            "id": new_placeholder_id(),
            "message_id": message_id,
            "contact_id": contact_id or "",
            "tenant_id": credentials.tenant_id,
            "status": TranscriptStatus.PROCESSING,
            "stage": PipelineStage.QUEUED,
        },
        manual_retry=manual_retry,
    )


def format_crm_note(transcript: Transcript) -> str:
    lines = ["Call Summary (AI)", ""]
    lines.append(transcript.summary or "No summary available")
    lines.append("")
    lines.append(f"Sentiment: {transcript.sentiment} ({transcript.sentiment_score}/100)")
    if transcript.duration_seconds:
        minutes, seconds = divmod(int(transcript.duration_seconds), 60)
        lines.append(f"Duration: {minutes}m {seconds:02d}s")
    if transcript.action_items:
        lines.append("")
        lines.append("Action Items:")
        lines.extend(f"- {item}" for item in transcript.action_items)
    if transcript.key_insights:
        lines.append("")
        lines.append("Key Insights:")
        lines.extend(f"- {item}" for item in transcript.key_insights)
    return "\n".join(lines)


class TranscriptionOrchestrator:
    def __init__(
        self,
        db: Session,
        *,
        stt: SpeechToTextClient,
        analysis: AnalysisEngine,
        gateway_factory: Callable[[TenantCredentials], CRMGateway] = CRMGateway.for_tenant,
        notes_enabled: bool = True,
        stale_after: timedelta = timedelta(minutes=30),
    ):
        self.db = db
        self.store = TranscriptStore(db)
        self.client_settings = ClientSettingsService(db)
        self.stt = stt
        self.analysis = analysis
        self.gateway_factory = gateway_factory
        self.notes_enabled = notes_enabled
        self.stale_after = stale_after

    # -------------------------
    # Steps 1-4
    # -------------------------

    def resolve_credentials(
        self,
        tenant_id: Optional[str] = None,
        location_id: Optional[str] = None,
    ) -> TenantCredentials:
        if tenant_id:
            return self.client_settings.credentials_for_tenant(tenant_id)
        if location_id:
            return self.client_settings.credentials_for_location(location_id)
        raise CredentialsNotConfigured("Neither tenant id nor CRM location id given")

    async def start_transcription(
        self,
        credentials: TenantCredentials,
        message_id: str,
        contact_id: Optional[str],
        callback_url: Optional[str],
        *,
        manual_retry: bool = False,
    ) -> Transcript:
        transcript = create_placeholder(
            self.store, credentials, message_id, contact_id, manual_retry=manual_retry
        )
        return await self.submit_for_transcription(credentials, transcript, callback_url)

    async def submit_for_transcription(
        self,
        credentials: TenantCredentials,
        transcript: Transcript,
        callback_url: Optional[str],
    ) -> Transcript:
        """
        Resolve the recording and hand it to the provider.

        Any failure here marks the record failed and is re-raised so
        interactive callers can report it.
        """
        message_id = transcript.message_id
        if not self.stt.configured:
            self.store.mark_failed(transcript, "Transcription failed: speech-to-text provider is not configured")
            raise SpeechToTextNotConfigured()

        gateway = self.gateway_factory(credentials)
        try:
            message = await gateway.fetch_message(message_id)
            contact_id = transcript.contact_id or message.get("contactId") or ""

            audio: Union[str, bytes, None] = resolve_audio_url(message)
            if audio is None:
                logger.info(f"[pipeline] no recording url on message_id={message_id}, trying direct download")
                try:
                    audio = await gateway.fetch_recording_bytes(message_id, credentials.location_id)
                except CRMNotFoundError:
                    raise NoRecordingAvailable(message_id)

            transcript = self.store.update_fields(
                transcript,
                contact_id=contact_id,
                audio_url=audio if isinstance(audio, str) else None,
                stage=PipelineStage.AUDIO_RESOLVED,
            )

            job_id = await self.stt.submit(audio, callback_url)
            transcript = self.store.update_fields(
                transcript,
                id=job_id,
                job_id=job_id,
                stage=PipelineStage.SUBMITTED,
            )
            logger.info(f"[pipeline] message_id={message_id} submitted as job_id={job_id}")
            return transcript

        except NoRecordingAvailable as e:
            self.store.mark_failed(transcript, f"{e}\n\n{e.guidance}")
            raise
        except CRMError as e:
            self.store.mark_failed(transcript, f"Could not load the call from HighLevel: {e}")
            raise
        except SpeechToTextError as e:
            self.store.mark_failed(transcript, f"Transcription submission failed: {e}")
            raise
        except Exception as e:
            self.store.mark_failed(transcript, f"Transcription failed: {type(e).__name__}: {e}")
            raise
        finally:
            await gateway.aclose()

    # -------------------------
    # Step 5: completion
    # -------------------------

    async def handle_completion(self, job_id: str) -> Dict[str, Any]:
        """
        React to a provider completion signal. The signal is only a trigger:
        content is always re-fetched by job id.
        """
        transcript = self.store.get_by_job_id(job_id)
        if transcript is None:
            logger.warning(f"[pipeline] completion for unknown job_id={job_id}, dropping")
            return {"success": False, "error": "No existing transcript record found", "transcript_id": job_id}

        if transcript.status != TranscriptStatus.PROCESSING.value:
            logger.info(f"[pipeline] job_id={job_id} already {transcript.status}, ignoring signal")
            return {"success": True, "message": f"Transcript already {transcript.status}", "transcript_id": job_id}

        try:
            result = await self.stt.fetch_normalized(job_id)
        except SpeechToTextError as e:
            if not _is_permanent(e):
                raise
            if e.status_code == 404:
                reason = f"Transcription job {job_id} no longer exists. Please retry."
            else:
                reason = f"Could not fetch transcription result ({e.status_code}): {e}. Please retry."
            self.store.mark_failed(transcript, reason)
            return {"success": False, "error": reason, "transcript_id": job_id, "status": TranscriptStatus.FAILED.value}

        if result.is_error:
            self.store.mark_failed(transcript, f"Transcription failed: {result.error}")
            return {"success": False, "error": result.error, "transcript_id": job_id}

        if not result.is_completed:
            logger.info(f"[pipeline] job_id={job_id} still {result.status}")
            return {"success": True, "message": "Transcript not yet completed", "status": result.status}

        transcript = await self.complete_transcript(transcript, result)
        return {
            "success": transcript.status == TranscriptStatus.COMPLETED.value,
            "transcript_id": job_id,
            "status": transcript.status,
        }

    async def complete_transcript(self, transcript: Transcript, result: NormalizedTranscript) -> Transcript:
        if not result.full_text:
            return self.store.mark_failed(transcript, "Transcription finished but no speech was detected in the recording")

        transcript = self.store.update_fields(
            transcript,
            full_text=result.full_text,
            speakers=result.speakers,
            duration_seconds=result.duration_seconds,
            stage=PipelineStage.TRANSCRIBED,
        )

        analysis = await self.analysis.analyze(result.full_text, result.speakers)

        transcript = self.store.save_transcript({
            "id": transcript.id,
            "message_id": transcript.message_id,
            "tenant_id": transcript.tenant_id,
            "contact_id": transcript.contact_id,
            "job_id": transcript.job_id,
            "audio_url": transcript.audio_url,
            "duration_seconds": result.duration_seconds,
            "full_text": result.full_text,
            "speakers": result.speakers,
            "status": TranscriptStatus.COMPLETED,
            "stage": PipelineStage.ANALYZED,
            **analysis.to_dict(),
        })
        logger.info(
            f"[pipeline] message_id={transcript.message_id} completed "
            f"turns={len(transcript.speakers)} sentiment={transcript.sentiment}"
        )

        await self.post_note(transcript)
        return transcript

    # -------------------------
    # Step 6: CRM note
    # -------------------------

    async def post_note(self, transcript: Transcript) -> bool:
        if not self.notes_enabled or not transcript.contact_id:
            return False

        try:
            credentials = self.client_settings.credentials_for_tenant(transcript.tenant_id)
        except CredentialsNotConfigured:
            logger.warning(f"[pipeline] no credentials to post note for message_id={transcript.message_id}")
            return False

        gateway = self.gateway_factory(credentials)
        try:
            await gateway.post_note(transcript.contact_id, format_crm_note(transcript))
        except Exception as e:
            logger.warning(f"[pipeline] note for message_id={transcript.message_id} not posted: {e}")
            return False
        finally:
            await gateway.aclose()

        self.store.update_fields(transcript, stage=PipelineStage.NOTE_POSTED)
        return True

    # -------------------------
    # User-driven entry points
    # -------------------------

    async def reanalyze(self, message_id: str, tenant_id: str) -> Transcript:
        transcript = self.store.require(message_id, tenant_id)
        if transcript.status != TranscriptStatus.COMPLETED.value:
            raise ReanalysisRejected(f"Transcript is {transcript.status}; only completed transcripts can be re-analyzed")
        if not (transcript.full_text or "").strip() or not transcript.speakers:
            raise ReanalysisRejected("Transcript has no text or speaker turns to analyze")

        analysis = await self.analysis.analyze(transcript.full_text, transcript.speakers)
        transcript = self.store.update_fields(
            transcript,
            summary=analysis.summary,
            sentiment=analysis.sentiment,
            sentiment_score=analysis.sentiment_score,
            action_items=analysis.action_items,
            key_insights=analysis.key_insights,
            topics=analysis.topics,
        )
        logger.info(f"[pipeline] re-analyzed message_id={message_id}")
        return transcript

    async def retry(self, message_id: str, tenant_id: str, callback_url: Optional[str]) -> Transcript:
        """The only way a failed transcript goes back to processing."""
        transcript = self.store.require(message_id, tenant_id)
        credentials = self.client_settings.credentials_for_tenant(tenant_id)
        logger.info(f"[pipeline] manual retry for message_id={message_id} (was {transcript.status})")
        return await self.start_transcription(
            credentials,
            message_id,
            transcript.contact_id,
            callback_url,
            manual_retry=True,
        )

    # -------------------------
    # Reconciliation
    # -------------------------

    async def reconcile_stale(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Settle `processing` records nobody has touched for a while.

        Submitted jobs are polled once and finished from the provider's
        state; records that never reached the provider are marked failed.
        """
        now = now or datetime.utcnow()
        counts = {"checked": 0, "completed": 0, "failed": 0, "pending": 0}

        for transcript in self.store.find_stale_processing(now - self.stale_after):
            counts["checked"] += 1
            if not transcript.job_id:
                self.store.mark_failed(
                    transcript,
                    "Transcription did not reach the speech-to-text provider "
                    "(the service may have restarted). Please retry.",
                )
                counts["failed"] += 1
                continue

            try:
                outcome = await self.handle_completion(transcript.job_id)
            except SpeechToTextError as e:
                logger.warning(f"[reconcile] job_id={transcript.job_id} poll failed: {e}")
                counts["pending"] += 1
                continue

            status = outcome.get("status")
            if status == TranscriptStatus.COMPLETED.value:
                counts["completed"] += 1
            elif outcome.get("success") is False or status == TranscriptStatus.FAILED.value:
                counts["failed"] += 1
            else:
                counts["pending"] += 1

        if counts["checked"]:
            logger.info(f"[reconcile] {counts}")
        return counts

    async def aclose(self) -> None:
        await self.stt.aclose()


def build_orchestrator(db: Session) -> TranscriptionOrchestrator:
    return TranscriptionOrchestrator(
        db,
        stt=SpeechToTextClient.from_settings(),
        analysis=AnalysisEngine.from_settings(),
        notes_enabled=settings.CRM_NOTES_ENABLED,
        stale_after=timedelta(minutes=settings.STALE_PROCESSING_MINUTES),
    )


async def run_transcription_job(
    tenant_id: str,
    message_id: str,
    contact_id: Optional[str],
    callback_url: Optional[str],
) -> None:
    """Background body for one dispatch: steps 3-4 on an existing placeholder."""
    with get_db_context() as db:
        orchestrator = build_orchestrator(db)
        try:
            transcript = orchestrator.store.get_by_message_id(message_id, tenant_id=tenant_id)
            try:
                credentials = orchestrator.resolve_credentials(tenant_id=tenant_id)
            except CredentialsNotConfigured as e:
                if transcript is not None and transcript.status == TranscriptStatus.PROCESSING.value:
                    orchestrator.store.mark_failed(transcript, f"Transcription failed: {e}")
                raise
            if transcript is None:
                transcript = create_placeholder(orchestrator.store, credentials, message_id, contact_id)
            elif transcript.status != TranscriptStatus.PROCESSING.value:
                logger.info(f"[pipeline] message_id={message_id} is {transcript.status}, nothing to run")
                return
            await orchestrator.submit_for_transcription(credentials, transcript, callback_url)
        except NoRecordingAvailable as e:
            logger.warning(f"[pipeline] {e}")
        except Exception as e:
            logger.error(f"[pipeline] transcription job for message_id={message_id} failed: {type(e).__name__}: {e}")
        finally:
            await orchestrator.aclose()


async def run_completion_job(job_id: str) -> Dict[str, Any]:
    with get_db_context() as db:
        orchestrator = build_orchestrator(db)
        try:
            return await orchestrator.handle_completion(job_id)
        finally:
            await orchestrator.aclose()


async def get_orchestrator(db: Session = Depends(get_db)):
    """FastAPI dependency: one orchestrator per request."""
    orchestrator = build_orchestrator(db)
    try:
        yield orchestrator
    finally:
        await orchestrator.aclose()
