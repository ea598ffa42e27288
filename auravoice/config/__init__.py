# AuraVoice - Configuration Package
from .settings import (
    AudioSettings,
    DebugSettings,
    LLMSettings,
    STTSettings,
    Settings,
    SilenceSettings,
    TTSSettings,
    load_settings,
)

__all__ = [
    "AudioSettings",
    "DebugSettings",
    "LLMSettings",
    "STTSettings",
    "Settings",
    "SilenceSettings",
    "TTSSettings",
    "load_settings",
]
