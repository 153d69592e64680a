# backend/callscribe/api/errors.py
"""Translate domain exceptions into HTTP responses."""

from fastapi import HTTPException

from callscribe.pipelines.transcription_pipeline import NoRecordingAvailable, ReanalysisRejected
from callscribe.services.client_settings_service import CredentialsNotConfigured
from callscribe.services.crm_gateway import CRMError
from callscribe.services.speech_to_text import SpeechToTextError, SpeechToTextNotConfigured
from callscribe.services.transcript_store import (
    InvalidStatusTransition,
    TranscriptNotFound,
    TranscriptOwnershipError,
)

CREDENTIALS_MISSING = "HighLevel credentials are not configured. Save your location id and access token in Settings first."


def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, NoRecordingAvailable):
        return HTTPException(
            status_code=404,
            detail={"error": "No audio recording found", "details": exc.guidance, "messageId": exc.message_id},
        )
    if isinstance(exc, (TranscriptNotFound, TranscriptOwnershipError)):
        return HTTPException(status_code=404, detail="Transcript not found")
    if isinstance(exc, CredentialsNotConfigured):
        return HTTPException(status_code=400, detail=CREDENTIALS_MISSING)
    if isinstance(exc, SpeechToTextNotConfigured):
        return HTTPException(status_code=500, detail=str(exc))
    if isinstance(exc, (CRMError, SpeechToTextError)):
        return HTTPException(status_code=exc.status_code, detail={"error": str(exc), "details": exc.details})
    if isinstance(exc, InvalidStatusTransition):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ReanalysisRejected, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


DOMAIN_ERRORS = (
    NoRecordingAvailable,
    TranscriptNotFound,
    TranscriptOwnershipError,
    CredentialsNotConfigured,
    CRMError,
    SpeechToTextError,
    InvalidStatusTransition,
    ReanalysisRejected,
    ValueError,
)
