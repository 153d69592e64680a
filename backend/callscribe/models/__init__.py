# backend/callscribe/models/__init__.py
from callscribe.models.transcript import Transcript, TranscriptStatus, PipelineStage, Sentiment
from callscribe.models.client_settings import ClientSettings

__all__ = ['Transcript', 'TranscriptStatus', 'PipelineStage', 'Sentiment', 'ClientSettings']
