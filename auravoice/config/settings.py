"""
AuraVoice - Configuration Module

Centralized configuration loading from environment variables and .env.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


def _env_str(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key, str(default)).lower().strip()
    return value in ("true", "1", "yes", "on")


def _env_device(key: str) -> Optional[int]:
    value = _env_str(key, "")
    return int(value) if value.isdigit() else None


@dataclass
class AudioSettings:
    """Audio input/output configuration."""
    sample_rate: int = 16000
    frame_ms: int = 20
    mic_gain: float = 1.0
    input_device: Optional[int] = None
    output_device: Optional[int] = None
    volume: float = 1.0


@dataclass
class SilenceSettings:
    """End-of-turn and restart timing."""
    threshold: float = 0.08
    duration_ms: int = 3500
    restart_delay_ms: int = 500
    provider_timeout_sec: float = 15.0


@dataclass
class STTSettings:
    """Speech recognition configuration."""
    model: str = "small"
    device: str = "cpu"
    compute_type: str = "int8"
    beam_size: int = 1
    language: Optional[str] = None  # None = auto-detect


@dataclass
class LLMSettings:
    """Reply generation configuration."""
    provider: str = "openai"        # Which remote provider goes first
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    groq_api_key: str = ""
    groq_model: str = "llama-3.1-8b-instant"
    max_tokens: int = 80
    temperature: float = 0.7
    model_path: str = ""            # Optional local GGUF fallback
    threads: int = 4


@dataclass
class TTSSettings:
    """Speech synthesis configuration."""
    azure_key: str = ""
    azure_region: str = "eastasia"
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "JBFqnCBsd6RMkjVDRZzb"
    models_dir: str = "models/tts"
    model_path: str = ""


@dataclass
class DebugSettings:
    """Debug and logging configuration."""
    enabled: bool = False
    log_level: str = "INFO"


@dataclass
class Settings:
    """Main configuration container."""
    audio: AudioSettings = field(default_factory=AudioSettings)
    silence: SilenceSettings = field(default_factory=SilenceSettings)
    stt: STTSettings = field(default_factory=STTSettings)
    llm: LLMSettings = field(default_factory=LLMSettings)
    tts: TTSSettings = field(default_factory=TTSSettings)
    debug: DebugSettings = field(default_factory=DebugSettings)

    @property
    def provider_order(self) -> List[str]:
        """Remote generation providers, preferred first."""
        if self.llm.provider.lower() == "groq":
            return ["groq", "openai"]
        return ["openai", "groq"]


def load_settings(env_path: Optional[str] = ".env") -> Settings:
    """Load configuration from environment variables (and .env if present)."""
    if env_path:
        load_dotenv(env_path, override=False)

    debug = _env_bool("DEBUG", False)

    return Settings(
        audio=AudioSettings(
            sample_rate=_env_int("AUDIO_SAMPLE_RATE", 16000),
            frame_ms=_env_int("AUDIO_FRAME_MS", 20),
            mic_gain=_env_float("MIC_GAIN", 1.0),
            input_device=_env_device("AUDIO_INPUT_DEVICE"),
            output_device=_env_device("TTS_OUTPUT_DEVICE"),
            volume=_env_float("TTS_VOLUME", 1.0),
        ),
        silence=SilenceSettings(
            threshold=_env_float("SILENCE_THRESHOLD", 0.08),
            duration_ms=_env_int("SILENCE_DURATION_MS", 3500),
            restart_delay_ms=_env_int("RESTART_DELAY_MS", 500),
            provider_timeout_sec=_env_float("PROVIDER_TIMEOUT_SEC", 15.0),
        ),
        stt=STTSettings(
            model=_env_str("STT_MODEL", "small"),
            device=_env_str("STT_DEVICE", "cpu"),
            compute_type=_env_str("STT_COMPUTE_TYPE", "int8"),
            beam_size=_env_int("STT_BEAM_SIZE", 1),
            language=_env_str("STT_LANGUAGE", "") or None,
        ),
        llm=LLMSettings(
            provider=_env_str("LLM_PROVIDER", "openai").lower() or "openai",
            openai_api_key=_env_str("OPENAI_API_KEY"),
            openai_model=_env_str("OPENAI_MODEL", "gpt-4o-mini"),
            groq_api_key=_env_str("GROQ_API_KEY"),
            groq_model=_env_str("GROQ_MODEL", "llama-3.1-8b-instant"),
            max_tokens=_env_int("LLM_MAX_TOKENS", 80),
            temperature=_env_float("LLM_TEMPERATURE", 0.7),
            model_path=_env_str("LLM_MODEL_PATH"),
            threads=_env_int("LLM_THREADS", 4),
        ),
        tts=TTSSettings(
            azure_key=_env_str("AZURE_SPEECH_KEY"),
            azure_region=_env_str("AZURE_SPEECH_REGION", "eastasia") or "eastasia",
            elevenlabs_api_key=_env_str("ELEVENLABS_API_KEY"),
            elevenlabs_voice_id=_env_str("ELEVENLABS_VOICE_ID", "JBFqnCBsd6RMkjVDRZzb"),
            models_dir=_env_str("TTS_MODELS_DIR", "models/tts"),
            model_path=_env_str("TTS_MODEL_PATH"),
        ),
        debug=DebugSettings(
            enabled=debug,
            log_level="DEBUG" if debug else _env_str("LOG_LEVEL", "INFO").upper(),
        ),
    )
