"""
Component Manager
=================

Builds the recognizer, the provider chains and the playback device from
Settings. Keeps component setup out of the orchestration logic.
"""

from pathlib import Path
from typing import List, Optional

from ..config.settings import Settings
from ..core.audio_input import MicrophoneConfig
from ..core.audio_output import AudioOutput, AudioOutputConfig
from ..core.llm import (
    GeneratorConfig,
    GroqChatProvider,
    LLMConfig,
    LocalLlamaProvider,
    OpenAIChatProvider,
    ReplyGenerator,
    ReplyProvider,
)
from ..core.stt import STTConfig, WhisperRecognizer
from ..core.tts import (
    AzureSpeechProvider,
    ElevenLabsSpeechProvider,
    PiperSpeechProvider,
    SpeechProvider,
    SpeechSynthesizer,
    SynthesizerConfig,
    TTSConfig,
)
from .config import OrchestratorConfig


_project_root = Path(__file__).parent.parent.parent


class ComponentManager:
    """
    Manages all voice assistant components.

    Components:
    - recognizer: microphone + faster-whisper
    - generator: OpenAI / Groq chain, local GGUF model last when present
    - synthesizer: Azure / ElevenLabs chain, Piper last, one AudioOutput
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._components_initialized = False

        self.recognizer: Optional[WhisperRecognizer] = None
        self.generator: Optional[ReplyGenerator] = None
        self.synthesizer: Optional[SpeechSynthesizer] = None
        self.audio_output: Optional[AudioOutput] = None

    def initialize_all(self) -> None:
        """Initialize all components."""
        if self._components_initialized:
            return

        print("=" * 60)
        print(" Initializing AuraVoice")
        print("=" * 60)

        self._init_recognizer()
        self._init_generator()
        self._init_audio_output()
        self._init_synthesizer()

        self._components_initialized = True

        print("\n" + "=" * 60)
        print(" AuraVoice Ready!")
        print("=" * 60)

    def _init_recognizer(self) -> None:
        stt = self.settings.stt
        audio = self.settings.audio
        print(f"\n[1/4] Speech Recognition (whisper {stt.model})...")

        self.recognizer = WhisperRecognizer(
            STTConfig(
                model_size=stt.model,
                device=stt.device,
                compute_type=stt.compute_type,
                beam_size=stt.beam_size,
                language=stt.language,
            ),
            MicrophoneConfig(
                sample_rate=audio.sample_rate,
                frame_ms=audio.frame_ms,
                device=audio.input_device,
                mic_gain=audio.mic_gain,
            ),
        )

    def build_reply_providers(self) -> List[ReplyProvider]:
        """Remote providers in preference order, local model last."""
        llm = self.settings.llm
        remote = {
            "openai": OpenAIChatProvider(
                llm.openai_api_key, llm.openai_model,
                max_tokens=llm.max_tokens, temperature=llm.temperature,
            ),
            "groq": GroqChatProvider(
                llm.groq_api_key, llm.groq_model,
                max_tokens=llm.max_tokens, temperature=llm.temperature,
            ),
        }
        providers: List[ReplyProvider] = [remote[name] for name in self.settings.provider_order]

        model_path = llm.model_path or self._find_llm_model()
        if model_path:
            providers.append(LocalLlamaProvider(LLMConfig(
                model_path=model_path,
                n_threads=llm.threads,
                max_tokens=llm.max_tokens,
                temperature=llm.temperature,
            )))
        return providers

    def _find_llm_model(self) -> str:
        """Auto-detect a local GGUF model, empty when there is none."""
        models_dir = _project_root / "models" / "llm"
        gguf_files = sorted(models_dir.glob("*.gguf")) if models_dir.exists() else []
        return str(gguf_files[0]) if gguf_files else ""

    def _init_generator(self) -> None:
        print("[2/4] Reply Generation...")
        providers = self.build_reply_providers()
        for provider in providers:
            state = "ready" if provider.available else "not configured"
            print(f"      {provider.name}: {state}")

        self.generator = ReplyGenerator(
            providers,
            GeneratorConfig(provider_timeout_sec=self.settings.silence.provider_timeout_sec),
        )

    def _init_audio_output(self) -> None:
        print("[3/4] Audio Output...")
        self.audio_output = AudioOutput(AudioOutputConfig(
            device=self.settings.audio.output_device,
            volume=self.settings.audio.volume,
        ))

    def build_speech_providers(self) -> List[SpeechProvider]:
        """Remote voices first, local Piper fallback last."""
        tts = self.settings.tts
        models_dir = Path(tts.models_dir)
        if not models_dir.is_absolute():
            models_dir = _project_root / models_dir

        return [
            AzureSpeechProvider(tts.azure_key, tts.azure_region),
            ElevenLabsSpeechProvider(tts.elevenlabs_api_key, voice_id=tts.elevenlabs_voice_id),
            PiperSpeechProvider(TTSConfig(models_dir=str(models_dir), model_path=tts.model_path)),
        ]

    def _init_synthesizer(self) -> None:
        print("[4/4] Speech Synthesis...")
        providers = self.build_speech_providers()
        for provider in providers:
            state = "ready" if provider.available else "not configured"
            print(f"      {provider.name}: {state}")

        self.synthesizer = SpeechSynthesizer(
            providers,
            self.audio_output,
            SynthesizerConfig(provider_timeout_sec=self.settings.silence.provider_timeout_sec),
        )

    def orchestrator_config(self) -> OrchestratorConfig:
        """Timing configuration for the turn orchestrator."""
        silence = self.settings.silence
        return OrchestratorConfig(
            restart_delay_sec=silence.restart_delay_ms / 1000.0,
            silence_threshold=silence.threshold,
            silence_duration_sec=silence.duration_ms / 1000.0,
        )
