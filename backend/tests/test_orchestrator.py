# backend/tests/test_orchestrator.py
"""
Transcription pipeline end to end against mocked HighLevel, AssemblyAI
and LLM transports.
"""

from datetime import datetime

import pytest

from callscribe.models.transcript import PipelineStage, Transcript, TranscriptStatus
from callscribe.pipelines.transcription_pipeline import (
    NoRecordingAvailable,
    ReanalysisRejected,
    build_callback_url,
    create_placeholder,
    format_crm_note,
)
from callscribe.services.crm_gateway import CRMUnauthorizedError
from callscribe.services.speech_to_text import SpeechToTextError, SpeechToTextNotConfigured
from callscribe.services.transcript_store import InvalidStatusTransition, TranscriptStore

from conftest import (
    PROVIDER_RESULT,
    TENANT_A,
    FakeCRM,
    FakeSTT,
    analysis_engine,
    credentials,
    make_orchestrator,
    seed_settings,
    seed_transcript,
    stale,
)

CALLBACK = "https://callscribe.test/api/webhooks/assemblyai-callback"


def _processing(db, message_id="m1", job_id=None, **fields):
    return seed_transcript(db, message_id=message_id, status=TranscriptStatus.PROCESSING.value, job_id=job_id, **fields)


# ============================================================================
# Submission
# ============================================================================

class TestSubmission:

    @pytest.mark.asyncio
    async def test_placeholder_then_submit(self, db_session):
        seed_settings(db_session)
        stt = FakeSTT()
        orchestrator = make_orchestrator(db_session, stt=stt)

        transcript = await orchestrator.start_transcription(credentials(), "m1", "c1", CALLBACK)
        await orchestrator.aclose()

        assert transcript.id == "job-1"
        assert transcript.job_id == "job-1"
        assert transcript.status == TranscriptStatus.PROCESSING.value
        assert transcript.stage == PipelineStage.SUBMITTED.value
        assert transcript.audio_url == "https://files.ghl.test/rec-m1.mp3"
        assert stt.submitted[0]["audio_url"] == "https://files.ghl.test/rec-m1.mp3"
        assert stt.submitted[0]["webhook_url"] == CALLBACK

    @pytest.mark.asyncio
    async def test_contact_taken_from_message_when_missing(self, db_session):
        orchestrator = make_orchestrator(db_session)
        transcript = await orchestrator.start_transcription(credentials(), "m1", None, CALLBACK)
        await orchestrator.aclose()
        assert transcript.contact_id == "c1"

    @pytest.mark.asyncio
    async def test_no_recording_marks_failed_with_guidance(self, db_session):
        crm = FakeCRM(message={"id": "m1", "contactId": "c1", "attachments": [], "meta": {}})
        stt = FakeSTT()
        orchestrator = make_orchestrator(db_session, crm=crm, stt=stt)

        with pytest.raises(NoRecordingAvailable):
            await orchestrator.start_transcription(credentials(), "m1", "c1", CALLBACK)
        await orchestrator.aclose()

        row = orchestrator.store.get_by_message_id("m1")
        assert row.status == TranscriptStatus.FAILED.value
        assert "Call recording is not enabled" in row.summary
        assert "too short" in row.summary
        assert stt.submitted == []

    @pytest.mark.asyncio
    async def test_recording_bytes_fallback(self, db_session):
        crm = FakeCRM(message={"id": "m1", "contactId": "c1"}, recording=b"wav-bytes")
        stt = FakeSTT()
        orchestrator = make_orchestrator(db_session, crm=crm, stt=stt)

        transcript = await orchestrator.start_transcription(credentials(), "m1", "c1", CALLBACK)
        await orchestrator.aclose()

        assert stt.uploads == [b"wav-bytes"]
        assert stt.submitted[0]["audio_url"] == "https://cdn.stt.test/u/1"
        assert transcript.audio_url is None
        assert transcript.stage == PipelineStage.SUBMITTED.value

    @pytest.mark.asyncio
    async def test_crm_rejects_token(self, db_session):
        orchestrator = make_orchestrator(db_session, crm=FakeCRM(status=401))
        with pytest.raises(CRMUnauthorizedError):
            await orchestrator.start_transcription(credentials(), "m1", "c1", CALLBACK)
        await orchestrator.aclose()

        row = orchestrator.store.get_by_message_id("m1")
        assert row.status == TranscriptStatus.FAILED.value
        assert "HighLevel" in row.summary

    @pytest.mark.asyncio
    async def test_provider_not_configured(self, db_session):
        crm = FakeCRM()
        orchestrator = make_orchestrator(db_session, crm=crm, api_key=None)
        with pytest.raises(SpeechToTextNotConfigured):
            await orchestrator.start_transcription(credentials(), "m1", "c1", CALLBACK)
        await orchestrator.aclose()

        assert orchestrator.store.get_by_message_id("m1").status == TranscriptStatus.FAILED.value
        assert crm.calls == []


# ============================================================================
# Completion
# ============================================================================

class TestCompletion:

    @pytest.mark.asyncio
    async def test_completed_job_is_analyzed_stored_and_noted(self, db_session):
        seed_settings(db_session)
        _processing(db_session, job_id="job-1", stage=PipelineStage.SUBMITTED.value)
        crm = FakeCRM()
        orchestrator = make_orchestrator(db_session, crm=crm)

        outcome = await orchestrator.handle_completion("job-1")
        await orchestrator.aclose()

        assert outcome["success"] is True
        row = orchestrator.store.get_by_message_id("m1")
        assert row.status == TranscriptStatus.COMPLETED.value
        assert row.stage == PipelineStage.NOTE_POSTED.value
        assert row.full_text == PROVIDER_RESULT["text"]
        assert [s["speaker"] for s in row.speakers] == ["A", "B"]
        assert row.duration_seconds == 75
        assert row.sentiment == "POSITIVE"
        assert row.sentiment_score == 78
        assert row.action_items == ["Send pricing sheet", "Book demo"]

        assert len(crm.notes) == 1
        assert "Customer asked about pricing" in crm.notes[0]
        assert "- Book demo" in crm.notes[0]
        assert ("POST", "/contacts/c1/notes") in crm.calls

    @pytest.mark.asyncio
    async def test_note_failure_keeps_record_completed(self, db_session):
        seed_settings(db_session)
        _processing(db_session, job_id="job-1")
        orchestrator = make_orchestrator(db_session, crm=FakeCRM(note_status=500))

        outcome = await orchestrator.handle_completion("job-1")
        await orchestrator.aclose()

        assert outcome["success"] is True
        row = orchestrator.store.get_by_message_id("m1")
        assert row.status == TranscriptStatus.COMPLETED.value
        assert row.stage == PipelineStage.ANALYZED.value

    @pytest.mark.asyncio
    async def test_unknown_job_writes_nothing(self, db_session):
        stt = FakeSTT()
        orchestrator = make_orchestrator(db_session, stt=stt)

        outcome = await orchestrator.handle_completion("job-unknown")
        await orchestrator.aclose()

        assert outcome["success"] is False
        assert outcome["error"] == "No existing transcript record found"
        assert db_session.query(Transcript).count() == 0
        assert stt.fetches == 0

    @pytest.mark.asyncio
    async def test_unauthorized_fetch_marks_failed(self, db_session):
        _processing(db_session, job_id="job-1")
        orchestrator = make_orchestrator(db_session, stt=FakeSTT(fetch_status=401))

        outcome = await orchestrator.handle_completion("job-1")
        await orchestrator.aclose()

        assert outcome["success"] is False
        assert outcome["status"] == TranscriptStatus.FAILED.value
        row = orchestrator.store.get_by_message_id("m1")
        assert row.status == TranscriptStatus.FAILED.value
        assert "401" in row.summary

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 503])
    async def test_transient_fetch_error_propagates(self, db_session, status):
        _processing(db_session, job_id="job-1")
        orchestrator = make_orchestrator(db_session, stt=FakeSTT(fetch_status=status))

        with pytest.raises(SpeechToTextError):
            await orchestrator.handle_completion("job-1")
        await orchestrator.aclose()

        assert orchestrator.store.get_by_message_id("m1").status == TranscriptStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_provider_error_marks_failed(self, db_session):
        _processing(db_session, job_id="job-1")
        stt = FakeSTT(result={"id": "job-1", "status": "error", "error": "Audio duration is too short"})
        orchestrator = make_orchestrator(db_session, stt=stt)

        outcome = await orchestrator.handle_completion("job-1")
        await orchestrator.aclose()

        assert outcome["success"] is False
        row = orchestrator.store.get_by_message_id("m1")
        assert row.status == TranscriptStatus.FAILED.value
        assert row.summary == "Transcription failed: Audio duration is too short"

    @pytest.mark.asyncio
    async def test_still_processing_is_acknowledged(self, db_session):
        _processing(db_session, job_id="job-1")
        orchestrator = make_orchestrator(db_session, stt=FakeSTT(result={"id": "job-1", "status": "processing"}))

        outcome = await orchestrator.handle_completion("job-1")
        await orchestrator.aclose()

        assert outcome["status"] == "processing"
        assert orchestrator.store.get_by_message_id("m1").status == TranscriptStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_terminal_record_ignores_late_signal(self, db_session):
        seed_transcript(db_session, job_id="job-1")
        stt = FakeSTT()
        orchestrator = make_orchestrator(db_session, stt=stt)

        outcome = await orchestrator.handle_completion("job-1")
        await orchestrator.aclose()

        assert outcome["success"] is True
        assert stt.fetches == 0

    @pytest.mark.asyncio
    async def test_no_speech_is_failed(self, db_session):
        _processing(db_session, job_id="job-1")
        stt = FakeSTT(result={"id": "job-1", "status": "completed", "text": "", "utterances": []})
        orchestrator = make_orchestrator(db_session, stt=stt)

        await orchestrator.handle_completion("job-1")
        await orchestrator.aclose()

        row = orchestrator.store.get_by_message_id("m1")
        assert row.status == TranscriptStatus.FAILED.value
        assert "no speech" in row.summary

    @pytest.mark.asyncio
    async def test_analysis_failure_still_completes(self, db_session):
        _processing(db_session, job_id="job-1")
        orchestrator = make_orchestrator(db_session, engine=analysis_engine("not json at all"))

        await orchestrator.handle_completion("job-1")
        await orchestrator.aclose()

        row = orchestrator.store.get_by_message_id("m1")
        assert row.status == TranscriptStatus.COMPLETED.value
        assert row.sentiment == "NEUTRAL"
        assert row.summary == PROVIDER_RESULT["text"][:200] + "..."


# ============================================================================
# Re-analysis / retry
# ============================================================================

class TestReanalyze:

    @pytest.mark.asyncio
    async def test_overwrites_enrichment_only(self, db_session):
        row = seed_transcript(db_session, summary="old summary", sentiment="NEGATIVE", sentiment_score=10)
        original_text = row.full_text
        orchestrator = make_orchestrator(db_session)

        updated = await orchestrator.reanalyze("m1", TENANT_A)
        await orchestrator.aclose()

        assert updated.summary.startswith("Customer asked about pricing")
        assert updated.sentiment == "POSITIVE"
        assert updated.topics == ["pricing"]
        assert updated.full_text == original_text
        assert updated.status == TranscriptStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_rejects_record_without_speaker_turns(self, db_session):
        row = seed_transcript(db_session, summary="keep me")
        row.speakers = []
        db_session.commit()
        engine = analysis_engine()
        orchestrator = make_orchestrator(db_session, engine=engine)

        with pytest.raises(ReanalysisRejected):
            await orchestrator.reanalyze("m1", TENANT_A)
        await orchestrator.aclose()

        assert orchestrator.store.get_by_message_id("m1").summary == "keep me"
        engine.client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejects_unfinished_record(self, db_session):
        _processing(db_session)
        orchestrator = make_orchestrator(db_session)
        with pytest.raises(ReanalysisRejected):
            await orchestrator.reanalyze("m1", TENANT_A)
        await orchestrator.aclose()


class TestRetry:

    @pytest.mark.asyncio
    async def test_failed_record_is_resubmitted(self, db_session):
        seed_settings(db_session)
        seed_transcript(db_session, status=TranscriptStatus.FAILED.value, summary="No audio recording found")
        orchestrator = make_orchestrator(db_session)

        transcript = await orchestrator.retry("m1", TENANT_A, CALLBACK)
        await orchestrator.aclose()

        assert transcript.status == TranscriptStatus.PROCESSING.value
        assert transcript.job_id == "job-1"
        assert transcript.summary == ""

    @pytest.mark.asyncio
    async def test_completed_record_cannot_be_retried(self, db_session):
        seed_settings(db_session)
        seed_transcript(db_session)
        orchestrator = make_orchestrator(db_session)
        with pytest.raises(InvalidStatusTransition):
            await orchestrator.retry("m1", TENANT_A, CALLBACK)
        await orchestrator.aclose()
        assert orchestrator.store.get_by_message_id("m1").status == TranscriptStatus.COMPLETED.value


# ============================================================================
# Reconciliation
# ============================================================================

class TestReconcile:

    @pytest.mark.asyncio
    async def test_stale_records_are_settled(self, db_session):
        _processing(db_session, message_id="never-submitted", created_at=stale(90))
        _processing(db_session, message_id="m1", job_id="job-1", created_at=stale(90))
        _processing(db_session, message_id="fresh")
        orchestrator = make_orchestrator(db_session)

        counts = await orchestrator.reconcile_stale()
        await orchestrator.aclose()

        assert counts == {"checked": 2, "completed": 1, "failed": 1, "pending": 0}
        store = orchestrator.store
        assert store.get_by_message_id("never-submitted").status == TranscriptStatus.FAILED.value
        assert "retry" in store.get_by_message_id("never-submitted").summary
        assert store.get_by_message_id("m1").status == TranscriptStatus.COMPLETED.value
        assert store.get_by_message_id("fresh").status == TranscriptStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_vanished_provider_job_is_failed(self, db_session):
        _processing(db_session, job_id="job-1", created_at=stale(90))
        orchestrator = make_orchestrator(db_session, stt=FakeSTT(fetch_status=404))

        counts = await orchestrator.reconcile_stale()
        await orchestrator.aclose()

        assert counts["failed"] == 1
        assert orchestrator.store.get_by_message_id("m1").status == TranscriptStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_rejected_fetch_is_failed(self, db_session):
        _processing(db_session, job_id="job-1", created_at=stale(90))
        orchestrator = make_orchestrator(db_session, stt=FakeSTT(fetch_status=401))

        counts = await orchestrator.reconcile_stale()
        await orchestrator.aclose()

        assert counts == {"checked": 1, "completed": 0, "failed": 1, "pending": 0}
        assert orchestrator.store.get_by_message_id("m1").status == TranscriptStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_provider_outage_leaves_record_pending(self, db_session):
        _processing(db_session, job_id="job-1", created_at=stale(90))
        orchestrator = make_orchestrator(db_session, stt=FakeSTT(fetch_status=503))

        counts = await orchestrator.reconcile_stale()
        await orchestrator.aclose()

        assert counts["pending"] == 1
        assert orchestrator.store.get_by_message_id("m1").status == TranscriptStatus.PROCESSING.value


# ============================================================================
# Helpers
# ============================================================================

class TestHelpers:

    def test_callback_url_prefers_public_base(self, monkeypatch):
        from callscribe.config import settings

        assert build_callback_url("http://internal:8000/") == CALLBACK
        monkeypatch.setattr(settings, "PUBLIC_BASE_URL", None)
        assert build_callback_url("http://internal:8000/") == "http://internal:8000/api/webhooks/assemblyai-callback"
        assert build_callback_url(None) is None

    def test_placeholder_keeps_created_at(self, db_session):
        first = datetime(2024, 3, 1, 9, 30)
        _processing(db_session, created_at=first, summary="Processing...")
        row = create_placeholder(TranscriptStore(db_session), credentials(), "m1", "c1")
        assert row.created_at == first
        assert row.summary == ""

    def test_note_format(self, db_session):
        row = seed_transcript(
            db_session,
            duration_seconds=125,
            action_items=["Send pricing sheet"],
            key_insights=["Budget approved"],
        )
        note = format_crm_note(row)
        assert note.startswith("Call Summary (AI)")
        assert "Sentiment: POSITIVE (70/100)" in note
        assert "Duration: 2m 05s" in note
        assert "- Send pricing sheet" in note
        assert "- Budget approved" in note
