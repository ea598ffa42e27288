# AuraVoice - Core Package
from .audio_analyzer import AudioIntensityAnalyzer
from .audio_input import MicrophoneStream
from .audio_output import AudioOutput
from .silence_detector import SilenceDetector
from .stt import SpeechRecognizer, Transcript, WhisperRecognizer
from .llm import ReplyGenerator, ReplyProvider, detect_language
from .tts import SpeechProvider, SpeechSynthesizer, VoiceConfig
from .health import ProviderStatus, check_providers

__all__ = [
    "AudioIntensityAnalyzer",
    "MicrophoneStream",
    "AudioOutput",
    "SilenceDetector",
    "SpeechRecognizer",
    "Transcript",
    "WhisperRecognizer",
    "ReplyGenerator",
    "ReplyProvider",
    "detect_language",
    "SpeechProvider",
    "SpeechSynthesizer",
    "VoiceConfig",
    "ProviderStatus",
    "check_providers",
]
