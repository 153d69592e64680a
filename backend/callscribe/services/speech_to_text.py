# backend/callscribe/services/speech_to_text.py
"""
AssemblyAI REST v2 client.

Only transcription + diarization is requested from the provider; summary,
sentiment and action items come from the analysis engine.
"""
from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from callscribe.config import settings
from callscribe.utils.logger import logger

CALLBACK_SECRET_HEADER = "X-Callback-Secret"

# Provider job states
STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"


class SpeechToTextError(Exception):
    def __init__(self, message: str, status_code: int = 502, details: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class SpeechToTextNotConfigured(SpeechToTextError):
    def __init__(self):
        super().__init__("Missing AssemblyAI API key. Please contact support.", 500)


@dataclass
class NormalizedTranscript:
    status: str
    full_text: str = ""
    speakers: List[Dict[str, Any]] = field(default_factory=list)
    duration_seconds: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED

    @property
    def is_error(self) -> bool:
        return self.status == STATUS_ERROR


def map_speaker(label: Any) -> str:
    # Provider label "A" is the agent side; every other label is the contact
    return "A" if label == "A" else "B"


def normalize_result(payload: Dict[str, Any]) -> NormalizedTranscript:
    """
    Convert a provider transcript payload into our shape.

    A failed provider job is reported through `error`, not raised.
    Utterance order is kept as delivered and timestamps stay in ms.
    """
    payload = payload if isinstance(payload, dict) else {}
    status = payload.get("status") or STATUS_PROCESSING

    if status == STATUS_ERROR:
        return NormalizedTranscript(status=status, error=payload.get("error") or "Unknown error")
    if status != STATUS_COMPLETED:
        return NormalizedTranscript(status=status)

    speakers = []
    for u in payload.get("utterances") or []:
        if not isinstance(u, dict):
            continue
        text = (u.get("text") or "").strip()
        if not text:
            continue
        speakers.append({
            "speaker": map_speaker(u.get("speaker")),
            "text": text,
            "start_ms": int(u.get("start") or 0),
            "end_ms": int(u.get("end") or 0),
        })

    full_text = (payload.get("text") or "").strip()
    if full_text and not speakers:
        # Diarization can come back empty on very short audio
        speakers = [{"speaker": "A", "text": full_text, "start_ms": 0, "end_ms": 0}]

    duration = payload.get("audio_duration")
    return NormalizedTranscript(
        status=status,
        full_text=full_text,
        speakers=speakers,
        duration_seconds=int(round(float(duration))) if duration is not None else None,
    )


def verify_callback_secret(provided: Optional[str], expected: Optional[str]) -> bool:
    """No configured secret means callbacks are accepted unauthenticated."""
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided, expected)


class SpeechToTextClient:
    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = "https://api.assemblyai.com",
        callback_secret: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.callback_secret = callback_secret
        self._http = http or httpx.AsyncClient(timeout=60)

    @classmethod
    def from_settings(cls, http: Optional[httpx.AsyncClient] = None) -> "SpeechToTextClient":
        return cls(
            settings.ASSEMBLYAI_API_KEY,
            base_url=settings.ASSEMBLYAI_BASE_URL,
            callback_secret=settings.ASSEMBLYAI_WEBHOOK_SECRET,
            http=http,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise SpeechToTextNotConfigured()
        return {"authorization": self.api_key}

    async def _post(self, path: str, *, operation: str, **kwargs) -> Dict[str, Any]:
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            resp = await self._http.post(f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"[stt] {operation} transport error: {type(e).__name__}: {e}")
            raise SpeechToTextError(f"AssemblyAI {operation} failed", 502, str(e)) from e
        if resp.status_code >= 400:
            logger.error(f"[stt] {operation} error {resp.status_code}: {resp.text[:500]}")
            raise SpeechToTextError(f"AssemblyAI {operation} failed", resp.status_code, resp.text[:1000])
        return resp.json()

    async def upload(self, audio: bytes) -> str:
        data = await self._post(
            "/v2/upload",
            operation="upload",
            content=audio,
            headers={"content-type": "application/octet-stream"},
        )
        upload_url = data.get("upload_url")
        if not upload_url:
            raise SpeechToTextError("AssemblyAI upload returned no upload_url")
        logger.info(f"[stt] uploaded {len(audio)} bytes")
        return upload_url

    async def submit(self, audio: Union[str, bytes], callback_url: Optional[str]) -> str:
        """Start a two-speaker diarized job. Bytes are uploaded first."""
        audio_url = await self.upload(audio) if isinstance(audio, (bytes, bytearray)) else audio

        body: Dict[str, Any] = {
            "audio_url": audio_url,
            "speaker_labels": True,
            "speakers_expected": 2,
        }
        if callback_url:
            body["webhook_url"] = callback_url
            if self.callback_secret:
                body["webhook_auth_header_name"] = CALLBACK_SECRET_HEADER
                body["webhook_auth_header_value"] = self.callback_secret

        data = await self._post("/v2/transcript", operation="submit", json=body)
        job_id = data.get("id")
        if not job_id:
            raise SpeechToTextError("AssemblyAI submit returned no transcript id")
        logger.info(f"[stt] submitted job_id={job_id} callback={'yes' if callback_url else 'no'}")
        return job_id

    async def get_transcript(self, job_id: str) -> Dict[str, Any]:
        try:
            resp = await self._http.get(f"{self.base_url}/v2/transcript/{job_id}", headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"[stt] fetch job_id={job_id} transport error: {e}")
            raise SpeechToTextError("Failed to fetch transcript from AssemblyAI", 502, str(e)) from e
        if resp.status_code >= 400:
            logger.error(f"[stt] fetch job_id={job_id} error {resp.status_code}: {resp.text[:500]}")
            raise SpeechToTextError(
                "Failed to fetch transcript from AssemblyAI", resp.status_code, resp.text[:1000]
            )
        return resp.json()

    async def fetch_normalized(self, job_id: str) -> NormalizedTranscript:
        return normalize_result(await self.get_transcript(job_id))

    async def poll_until_complete(
        self,
        job_id: str,
        interval_s: float = 3.0,
        timeout_s: float = 600.0,
    ) -> NormalizedTranscript:
        """Diagnostic polling; the pipeline itself waits for the callback."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while True:
            result = await self.fetch_normalized(job_id)
            if result.status in (STATUS_COMPLETED, STATUS_ERROR):
                return result
            if loop.time() >= deadline:
                raise SpeechToTextError(f"Timed out waiting for job {job_id}", 504)
            await asyncio.sleep(interval_s)

    async def aclose(self) -> None:
        await self._http.aclose()
