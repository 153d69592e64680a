# backend/tests/conftest.py
"""
Shared fixtures.

The environment is pinned before the package is imported: settings are
read once at import time.
"""

import json
import os
import tempfile
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

_TMP_DIR = tempfile.mkdtemp(prefix="callscribe-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["INTERNAL_API_SECRET"] = "test-internal-secret"
os.environ["ASSEMBLYAI_API_KEY"] = "test-assemblyai-key"
os.environ["PUBLIC_BASE_URL"] = "https://callscribe.test"
os.environ["RECONCILE_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.pop("ASSEMBLYAI_WEBHOOK_SECRET", None)
os.environ.pop("JWT_AUDIENCE", None)
os.environ.pop("OPENAI_API_KEY", None)

import httpx
import pytest
from fastapi.testclient import TestClient

from callscribe.auth.jwt_handler import create_access_token
from callscribe.database import Base, SessionLocal, engine
from callscribe.main import app
from callscribe.models.client_settings import ClientSettings
from callscribe.models.transcript import PipelineStage, Transcript, TranscriptStatus
from callscribe.pipelines.transcription_pipeline import TranscriptionOrchestrator
from callscribe.services.analysis_engine import AnalysisEngine
from callscribe.services.client_settings_service import TenantCredentials
from callscribe.services.crm_gateway import CRMGateway
from callscribe.services.speech_to_text import SpeechToTextClient

import callscribe.models  # noqa: F401

GHL_BASE = "https://ghl.test"
STT_BASE = "https://stt.test"

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


# ============================================================================
# Database / app
# ============================================================================

@pytest.fixture(autouse=True)
def db_session():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


def make_token(tenant_id: str) -> str:
    return create_access_token({"sub": tenant_id, "email": f"{tenant_id}@example.com"})


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token(TENANT_A)}"}


@pytest.fixture
def other_auth_headers():
    return {"Authorization": f"Bearer {make_token(TENANT_B)}"}


# ============================================================================
# Seed helpers
# ============================================================================

def seed_settings(db, tenant_id=TENANT_A, location_id="loc1", token="ghl-token-a") -> ClientSettings:
    row = ClientSettings(tenant_id=tenant_id, ghl_location_id=location_id, ghl_access_token=token)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


SPEAKERS = [
    {"speaker": "A", "text": "Hi, this is Dana from Acme.", "start_ms": 0, "end_ms": 1800},
    {"speaker": "B", "text": "Hello, I wanted to ask about pricing.", "start_ms": 1900, "end_ms": 4200},
]


def seed_transcript(
    db,
    message_id="m1",
    tenant_id=TENANT_A,
    status=TranscriptStatus.COMPLETED.value,
    contact_id="c1",
    job_id=None,
    created_at=None,
    **fields,
) -> Transcript:
    completed = status == TranscriptStatus.COMPLETED.value
    values = {
        "id": job_id or f"transcript_{message_id}",
        "message_id": message_id,
        "tenant_id": tenant_id,
        "contact_id": contact_id,
        "job_id": job_id,
        "status": status,
        "stage": PipelineStage.ANALYZED.value if completed else PipelineStage.QUEUED.value,
        "full_text": " ".join(s["text"] for s in SPEAKERS) if completed else "",
        "speakers": list(SPEAKERS) if completed else [],
        "summary": "Pricing call." if completed else "",
        "sentiment": "POSITIVE" if completed else "NEUTRAL",
        "sentiment_score": 70 if completed else 50,
        "action_items": ["Send pricing sheet"] if completed else [],
        "key_insights": [],
        "topics": [],
    }
    values.update(fields)
    row = Transcript(**values)
    if created_at is not None:
        row.created_at = created_at
        row.updated_at = created_at
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


# ============================================================================
# Provider fakes
# ============================================================================

def mock_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def credentials(tenant_id=TENANT_A, location_id="loc1") -> TenantCredentials:
    return TenantCredentials(tenant_id=tenant_id, location_id=location_id, access_token="ghl-token-a")


def gateway_factory(handler):
    def build(creds: TenantCredentials) -> CRMGateway:
        return CRMGateway(creds, base_url=GHL_BASE, api_version="2021-07-28", http=mock_http(handler))
    return build


def stt_client(handler, api_key="test-assemblyai-key", callback_secret=None) -> SpeechToTextClient:
    return SpeechToTextClient(api_key, base_url=STT_BASE, callback_secret=callback_secret, http=mock_http(handler))


def llm_reply(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def fake_llm(content: str = None, side_effect=None) -> MagicMock:
    llm = MagicMock()
    llm.chat.completions.create = AsyncMock(
        return_value=llm_reply(content) if content is not None else None,
        side_effect=side_effect,
    )
    return llm


ANALYSIS_JSON = (
    '{"summary": "Customer asked about pricing and agreed to a demo.", '
    '"sentiment": "POSITIVE", "sentiment_score": 78, '
    '"action_items": ["Send pricing sheet", "Book demo"], '
    '"key_insights": ["Budget approved"], "topics": ["pricing"]}'
)


def analysis_engine(content: str = ANALYSIS_JSON) -> AnalysisEngine:
    return AnalysisEngine(fake_llm(content), model="test-model", timeout_s=5)


def stale(minutes: int = 120) -> datetime:
    return datetime.utcnow() - timedelta(minutes=minutes)


# ============================================================================
# Pipeline fakes
# ============================================================================

PROVIDER_RESULT = {
    "id": "job-1",
    "status": "completed",
    "text": "Hi, this is Dana. Hello Dana, send me pricing.",
    "audio_duration": 75,
    "utterances": [
        {"speaker": "A", "text": "Hi, this is Dana.", "start": 0, "end": 1200},
        {"speaker": "B", "text": "Hello Dana, send me pricing.", "start": 1300, "end": 3600},
    ],
}


class FakeCRM:
    """Records HighLevel calls and answers from canned data."""

    def __init__(self, message=None, recording=None, status=200, note_status=201):
        self.message = message if message is not None else {
            "id": "m1",
            "contactId": "c1",
            "messageType": "TYPE_CALL",
            "attachments": [{"url": "https://files.ghl.test/rec-m1.mp3"}],
        }
        self.recording = recording
        self.status = status
        self.note_status = note_status
        self.notes = []
        self.calls = []

    def __call__(self, request: httpx.Request):
        self.calls.append((request.method, request.url.path))
        if self.status != 200:
            return httpx.Response(self.status, text="token expired")
        if request.method == "POST" and request.url.path.endswith("/notes"):
            self.notes.append(json.loads(request.content)["body"])
            return httpx.Response(self.note_status, json={"note": {"id": "n1"}})
        if request.url.path.endswith("/recording"):
            if self.recording is None:
                return httpx.Response(404, text="Recording not found")
            return httpx.Response(200, content=self.recording)
        return httpx.Response(200, json={"message": self.message})


class FakeSTT:
    def __init__(self, result=None, fetch_status=200):
        self.result = result if result is not None else PROVIDER_RESULT
        self.fetch_status = fetch_status
        self.submitted = []
        self.uploads = []
        self.fetches = 0

    def __call__(self, request: httpx.Request):
        if request.url.path == "/v2/upload":
            self.uploads.append(request.content)
            return httpx.Response(200, json={"upload_url": "https://cdn.stt.test/u/1"})
        if request.method == "POST" and request.url.path == "/v2/transcript":
            self.submitted.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "job-1", "status": "queued"})
        self.fetches += 1
        if self.fetch_status != 200:
            return httpx.Response(self.fetch_status, text="Transcript not found")
        return httpx.Response(200, json=self.result)


def make_orchestrator(db, crm=None, stt=None, engine=None, api_key="test-assemblyai-key"):
    return TranscriptionOrchestrator(
        db,
        stt=stt_client(stt or FakeSTT(), api_key=api_key),
        analysis=engine or analysis_engine(),
        gateway_factory=gateway_factory(crm or FakeCRM()),
    )

