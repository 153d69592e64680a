# backend/callscribe/services/transcript_store.py
"""
Transcript persistence.

Every write is keyed on the CRM message id. Writes are full-record
overwrites so duplicate webhook deliveries or concurrent pipeline runs for
the same call end as "last writer wins" instead of a half-merged row.
`created_at` is only ever set by the first insert.

Status rules:
    processing -> processing | completed | failed
    completed  -> completed            (re-analysis rewrites enrichment only)
    failed     -> failed | processing  (processing only through manual retry)
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from callscribe.models.transcript import PipelineStage, Sentiment, Transcript, TranscriptStatus
from callscribe.utils.logger import logger


class TranscriptNotFound(Exception):
    """No transcript exists for the requested key (within the caller's tenant)."""


class InvalidStatusTransition(Exception):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move transcript from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class TranscriptOwnershipError(Exception):
    """A write tried to take over a message id that belongs to another tenant."""


_TRANSITIONS = {
    TranscriptStatus.PROCESSING.value: {
        TranscriptStatus.PROCESSING.value,
        TranscriptStatus.COMPLETED.value,
        TranscriptStatus.FAILED.value,
    },
    TranscriptStatus.COMPLETED.value: {TranscriptStatus.COMPLETED.value},
    TranscriptStatus.FAILED.value: {TranscriptStatus.FAILED.value},
}

# Field -> value used when a full-record write leaves it out
RECORD_DEFAULTS: Dict[str, Any] = {
    "contact_id": "",
    "job_id": None,
    "status": TranscriptStatus.PROCESSING.value,
    "stage": PipelineStage.QUEUED.value,
    "duration_seconds": None,
    "audio_url": None,
    "full_text": "",
    "speakers": [],
    "sentiment": Sentiment.NEUTRAL.value,
    "sentiment_score": 50,
    "summary": "",
    "action_items": [],
    "key_insights": [],
    "topics": [],
}

_LIST_FIELDS = ("speakers", "action_items", "key_insights", "topics")


def new_placeholder_id() -> str:
    return f"transcript_{uuid.uuid4().hex}"


def _value(v: Any) -> Any:
    return v.value if isinstance(v, (TranscriptStatus, PipelineStage, Sentiment)) else v


def check_transition(current: str, requested: str, *, manual_retry: bool = False) -> None:
    current, requested = _value(current), _value(requested)
    if requested in _TRANSITIONS.get(current, set()):
        return
    if manual_retry and current == TranscriptStatus.FAILED.value and requested == TranscriptStatus.PROCESSING.value:
        return
    raise InvalidStatusTransition(current, requested)


def _check_completed_content(values: Dict[str, Any]) -> None:
    if values.get("status") != TranscriptStatus.COMPLETED.value:
        return
    if not (values.get("full_text") or "").strip() or not values.get("speakers"):
        raise ValueError("A completed transcript needs non-empty full_text and speakers")


class TranscriptStore:
    def __init__(self, db: Session):
        self.db = db

    # -------------------------
    # Reads
    # -------------------------

    def get_by_message_id(self, message_id: str, tenant_id: Optional[str] = None) -> Optional[Transcript]:
        if not message_id:
            return None
        q = self.db.query(Transcript).filter(Transcript.message_id == message_id)
        if tenant_id is not None:
            q = q.filter(Transcript.tenant_id == tenant_id)
        return q.first()

    def require(self, message_id: str, tenant_id: str) -> Transcript:
        t = self.get_by_message_id(message_id, tenant_id=tenant_id)
        if t is None:
            raise TranscriptNotFound(message_id)
        return t

    def get_by_job_id(self, job_id: str) -> Optional[Transcript]:
        if not job_id:
            return None
        return (
            self.db.query(Transcript)
            .filter((Transcript.job_id == job_id) | (Transcript.id == job_id))
            .first()
        )

    def list_for_tenant(self, tenant_id: str, contact_id: Optional[str] = None) -> List[Transcript]:
        q = self.db.query(Transcript).filter(Transcript.tenant_id == tenant_id)
        if contact_id:
            q = q.filter(Transcript.contact_id == contact_id)
        return q.order_by(Transcript.created_at.desc()).all()

    def statuses_for_messages(self, tenant_id: str, message_ids: Iterable[str]) -> Dict[str, str]:
        ids = [m for m in message_ids if m]
        if not ids:
            return {}
        rows = (
            self.db.query(Transcript.message_id, Transcript.status)
            .filter(Transcript.tenant_id == tenant_id, Transcript.message_id.in_(ids))
            .all()
        )
        return {m: s for m, s in rows}

    def find_stale_processing(self, older_than: datetime) -> List[Transcript]:
        return (
            self.db.query(Transcript)
            .filter(
                Transcript.status == TranscriptStatus.PROCESSING.value,
                Transcript.updated_at < older_than,
            )
            .order_by(Transcript.updated_at.asc())
            .all()
        )

    # -------------------------
    # Writes
    # -------------------------

    def save_transcript(self, record: Dict[str, Any], *, manual_retry: bool = False) -> Transcript:
        """
        Upsert a full transcript record keyed on `message_id`.

        Fields missing from `record` are reset to their defaults, `created_at`
        of an existing row is kept, and the status change is validated.
        """
        message_id = (record.get("message_id") or "").strip()
        tenant_id = (record.get("tenant_id") or "").strip()
        if not message_id:
            raise ValueError("message_id is required")
        if not tenant_id:
            raise ValueError("tenant_id is required")

        values = dict(RECORD_DEFAULTS)
        for key in RECORD_DEFAULTS:
            if key in record:
                values[key] = _value(record[key])
        for key in _LIST_FIELDS:
            values[key] = list(values[key] or [])
        values["contact_id"] = values["contact_id"] or ""
        _check_completed_content(values)

        existing = self.get_by_message_id(message_id)
        if existing is not None:
            return self._overwrite(existing, record, values, manual_retry)

        row = Transcript(
            id=record.get("id") or new_placeholder_id(),
            message_id=message_id,
            tenant_id=tenant_id,
            **values,
        )
        if record.get("created_at"):
            row.created_at = record["created_at"]
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost an insert race on message_id: fall through to overwrite
            self.db.rollback()
            existing = self.get_by_message_id(message_id)
            if existing is None:
                raise
            return self._overwrite(existing, record, values, manual_retry)

        self.db.refresh(row)
        logger.info(f"[store] inserted transcript message_id={message_id} status={row.status}")
        return row

    def _overwrite(
        self,
        existing: Transcript,
        record: Dict[str, Any],
        values: Dict[str, Any],
        manual_retry: bool,
    ) -> Transcript:
        if existing.tenant_id != record.get("tenant_id"):
            raise TranscriptOwnershipError(existing.message_id)

        check_transition(existing.status, values["status"], manual_retry=manual_retry)

        if record.get("id") and record["id"] != existing.id:
            existing.id = record["id"]
        for key, v in values.items():
            setattr(existing, key, v)
        existing.updated_at = datetime.utcnow()

        self.db.commit()
        self.db.refresh(existing)
        logger.info(f"[store] overwrote transcript message_id={existing.message_id} status={existing.status}")
        return existing

    def update_fields(self, transcript: Transcript, *, manual_retry: bool = False, **fields: Any) -> Transcript:
        """In-place update of selected fields on an existing row."""
        if "status" in fields:
            check_transition(transcript.status, fields["status"], manual_retry=manual_retry)

        merged = transcript.to_dict()
        merged.update({k: _value(v) for k, v in fields.items()})
        _check_completed_content(merged)

        for key, v in fields.items():
            v = _value(v)
            if key in _LIST_FIELDS:
                v = list(v or [])
            setattr(transcript, key, v)
        transcript.updated_at = datetime.utcnow()

        self.db.commit()
        self.db.refresh(transcript)
        return transcript

    def mark_failed(self, transcript: Transcript, reason: str) -> Transcript:
        logger.warning(f"[store] transcript message_id={transcript.message_id} failed: {reason[:200]}")
        return self.update_fields(
            transcript,
            status=TranscriptStatus.FAILED,
            stage=PipelineStage.FAILED,
            summary=reason,
        )

    def delete(self, message_id: str, tenant_id: str) -> bool:
        t = self.get_by_message_id(message_id, tenant_id=tenant_id)
        if t is None:
            return False
        self.db.delete(t)
        self.db.commit()
        logger.info(f"[store] deleted transcript message_id={message_id}")
        return True


def merge_speaker_turns(transcripts: Iterable[Transcript]) -> List[Dict[str, Any]]:
    """
    Combine the turns of several calls into one timeline.

    Ordered by (call created_at, turn start_ms); each turn keeps a pointer to
    the call it came from.
    """
    merged = []
    for t in transcripts:
        for turn in t.speakers or []:
            merged.append((
                t.created_at or datetime.min,
                int(turn.get("start_ms") or 0),
                {**turn, "message_id": t.message_id},
            ))
    merged.sort(key=lambda item: (item[0], item[1]))
    return [turn for _, _, turn in merged]
