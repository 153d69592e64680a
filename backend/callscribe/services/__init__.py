from callscribe.services.analysis_engine import AnalysisEngine
from callscribe.services.client_settings_service import ClientSettingsService
from callscribe.services.crm_gateway import CRMGateway
from callscribe.services.speech_to_text import SpeechToTextClient
from callscribe.services.transcript_store import TranscriptStore

__all__ = [
    'AnalysisEngine',
    'ClientSettingsService',
    'CRMGateway',
    'SpeechToTextClient',
    'TranscriptStore'
]
