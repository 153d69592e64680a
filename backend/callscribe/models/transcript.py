# backend/callscribe/models/transcript.py
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, Integer, Text, DateTime, String, JSON

from callscribe.database import Base


class TranscriptStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Sentiment(str, Enum):
    POSITIVE = "POSITIVE"
    NEUTRAL = "NEUTRAL"
    NEGATIVE = "NEGATIVE"


class PipelineStage(str, Enum):
    """Last pipeline step that finished for a transcript."""
    QUEUED = "queued"
    AUDIO_RESOLVED = "audio_resolved"
    SUBMITTED = "submitted"
    TRANSCRIBED = "transcribed"
    ANALYZED = "analyzed"
    NOTE_POSTED = "note_posted"
    FAILED = "failed"


class Transcript(Base):
    __tablename__ = "transcripts"

    # Placeholder id until the speech-to-text job exists, then the job id
    id = Column(String(100), primary_key=True, index=True)

    # One transcript per CRM call message
    message_id = Column(String(100), unique=True, index=True, nullable=False)
    contact_id = Column(String(100), index=True, nullable=False, default="")
    tenant_id = Column(String(100), index=True, nullable=False)

    job_id = Column(String(100), index=True, nullable=True)

    status = Column(String(20), index=True, nullable=False, default=TranscriptStatus.PROCESSING.value)
    stage = Column(String(30), nullable=False, default=PipelineStage.QUEUED.value)

    duration_seconds = Column(Integer, nullable=True)
    audio_url = Column(String(1000), nullable=True)

    full_text = Column(Text, nullable=False, default="")
    # [{speaker: "A"|"B", text, start_ms, end_ms}, ...] in provider order
    speakers = Column(JSON, nullable=False, default=list)

    sentiment = Column(String(10), nullable=False, default=Sentiment.NEUTRAL.value)
    sentiment_score = Column(Integer, nullable=False, default=50)
    summary = Column(Text, nullable=False, default="")
    action_items = Column(JSON, nullable=False, default=list)
    key_insights = Column(JSON, nullable=False, default=list)
    topics = Column(JSON, nullable=False, default=list)

    # Written once by the placeholder insert
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "contact_id": self.contact_id,
            "job_id": self.job_id,
            "status": self.status,
            "stage": self.stage,
            "duration_seconds": self.duration_seconds,
            "audio_url": self.audio_url,
            "full_text": self.full_text or "",
            "speakers": list(self.speakers or []),
            "sentiment": self.sentiment,
            "sentiment_score": self.sentiment_score,
            "summary": self.summary or "",
            "action_items": list(self.action_items or []),
            "key_insights": list(self.key_insights or []),
            "topics": list(self.topics or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
