"""
AuraVoice - Text-to-Speech Module
=================================

Speak the assistant's reply.

Features:
- Ordered provider chain: Azure Speech -> ElevenLabs -> local Piper
- Voice chosen once per turn from the reply's language and passed as a
  value (VoiceConfig) to a stateless synthesize(text, voice)
- A provider fails on exception, timeout or empty audio; the next one runs
- speak() returns when playback has audibly finished
- All playback goes through one queued AudioOutput, clips never overlap
- SynthesisExhaustedError when nothing could be played; the text reply
  is kept by the caller

Voices:
- en-US: en-US-JennyNeural (Azure), Piper en_US-amy-medium
- zh-CN: zh-CN-YunyangNeural (Azure), Piper zh_CN-huayan-medium

Piper voice download:
    python -m piper.download_voices en_US-amy-medium --data-dir models/tts
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape
import asyncio
import logging
import re
import threading
import time

import httpx
import numpy as np

from .audio_output import AudioOutput, AudioPlaybackError
from .errors import SynthesisExhaustedError, TransportError
from .llm import LANG_EN, LANG_ZH, detect_language
from ..utils.audio_utils import decode_wav_bytes, pcm16_bytes_to_float

# Import Piper TTS
try:
    from piper import PiperVoice
    HAS_PIPER = True
except ImportError:
    HAS_PIPER = False

log = logging.getLogger(__name__)


# =============================================================================
# Voices
# =============================================================================

@dataclass(frozen=True)
class VoiceConfig:
    """Voice for one turn. Each provider reads the field it understands."""
    language: str = LANG_EN
    name: str = "en-US-JennyNeural"         # Azure neural voice
    elevenlabs_voice_id: Optional[str] = None
    piper_voice: str = "en_US-amy-medium"   # Piper model stem


VOICES: Dict[str, VoiceConfig] = {
    LANG_EN: VoiceConfig(LANG_EN, "en-US-JennyNeural", None, "en_US-amy-medium"),
    LANG_ZH: VoiceConfig(LANG_ZH, "zh-CN-YunyangNeural", None, "zh_CN-huayan-medium"),
}


def select_voice(text: str, voices: Optional[Dict[str, VoiceConfig]] = None) -> VoiceConfig:
    """Voice matching the detected language of the text."""
    voices = voices or VOICES
    return voices.get(detect_language(text), voices[LANG_EN])


def escape_xml(text: str) -> str:
    """Escape text for an SSML body."""
    return escape(text, {'"': "&quot;", "'": "&apos;"})


# =============================================================================
# Providers
# =============================================================================

class SpeechProvider(ABC):
    """One synthesis backend. synthesize() raises TransportError on failure."""

    name: str = "provider"

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def synthesize(self, text: str, voice: VoiceConfig) -> Tuple[np.ndarray, int]:
        """Return (float32 audio, sample_rate)."""

    async def aclose(self) -> None:
        pass


class HTTPSpeechProvider(SpeechProvider):
    """Shared httpx client handling for remote providers."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(self.name, f"request timed out: {e}", category="timeout") from e
        except httpx.HTTPError as e:
            raise TransportError(self.name, f"request failed: {e}", category="network") from e

        if response.status_code != 200:
            raise TransportError(
                self.name, response.text[:200], status=response.status_code, category="http"
            )
        return response

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class AzureSpeechProvider(HTTPSpeechProvider):
    """
    Azure Cognitive Services neural TTS.

    A bearer token is issued from the subscription key (valid ~10 minutes,
    refreshed after token_ttl_sec) and the text is sent as SSML. Output is
    requested as RIFF PCM so it decodes without an MP3 codec.
    """

    name = "azure"

    def __init__(
        self,
        api_key: Optional[str],
        region: str = "eastasia",
        output_format: str = "riff-24khz-16bit-mono-pcm",
        token_ttl_sec: float = 540.0,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = (api_key or "").strip()
        self.region = region.strip()
        self.output_format = output_format
        self.token_ttl_sec = token_ttl_sec
        self._token: Optional[str] = None
        self._token_at = 0.0

    @property
    def available(self) -> bool:
        return bool(self.api_key and self.region)

    @property
    def token_url(self) -> str:
        return f"https://{self.region}.api.cognitive.microsoft.com/sts/v1.0/issueToken"

    @property
    def synthesis_url(self) -> str:
        return f"https://{self.region}.tts.speech.microsoft.com/cognitiveservices/v1"

    async def issue_token(self) -> str:
        """Exchange the subscription key for a bearer token."""
        response = await self._request(
            "POST",
            self.token_url,
            headers={
                "Ocp-Apim-Subscription-Key": self.api_key,
                "Content-Type": "application/x-www-form-urlencoded",
                "Content-Length": "0",
            },
        )
        return response.text.strip()

    async def _get_token(self) -> str:
        if self._token is None or time.monotonic() - self._token_at > self.token_ttl_sec:
            self._token = await self.issue_token()
            self._token_at = time.monotonic()
        return self._token

    @staticmethod
    def build_ssml(text: str, voice: VoiceConfig) -> str:
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<speak version="1.0" xml:lang="{voice.language}">\n'
            f'  <voice name="{voice.name}">{escape_xml(text)}</voice>\n'
            '</speak>'
        )

    async def synthesize(self, text: str, voice: VoiceConfig) -> Tuple[np.ndarray, int]:
        if not self.available:
            raise TransportError(self.name, "AZURE_SPEECH_KEY not configured", category="config")

        token = await self._get_token()
        try:
            response = await self._request(
                "POST",
                self.synthesis_url,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/ssml+xml",
                    "X-Microsoft-OutputFormat": self.output_format,
                    "User-Agent": "auravoice",
                },
                content=self.build_ssml(text, voice).encode("utf-8"),
            )
        except TransportError as e:
            if e.status == 401:
                # Token expired early; next call issues a fresh one
                self._token = None
            raise

        try:
            return decode_wav_bytes(response.content)
        except ValueError as e:
            raise TransportError(self.name, f"undecodable audio: {e}", category="decode") from e


class ElevenLabsSpeechProvider(HTTPSpeechProvider):
    """ElevenLabs TTS, raw 16-bit PCM output."""

    name = "elevenlabs"
    base_url = "https://api.elevenlabs.io"

    def __init__(
        self,
        api_key: Optional[str],
        voice_id: str = "JBFqnCBsd6RMkjVDRZzb",
        model_id: str = "eleven_turbo_v2_5",
        sample_rate: int = 24000,
        stability: float = 0.3,
        similarity_boost: float = 0.6,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.sample_rate = sample_rate
        self.voice_settings = {"stability": stability, "similarity_boost": similarity_boost}

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def synthesize(self, text: str, voice: VoiceConfig) -> Tuple[np.ndarray, int]:
        if not self.api_key:
            raise TransportError(self.name, "ELEVENLABS_API_KEY not configured", category="config")

        voice_id = voice.elevenlabs_voice_id or self.voice_id
        response = await self._request(
            "POST",
            f"{self.base_url}/v1/text-to-speech/{voice_id}",
            params={"output_format": f"pcm_{self.sample_rate}"},
            headers={
                "xi-api-key": self.api_key,
                "Content-Type": "application/json",
            },
            json={
                "text": text,
                "model_id": self.model_id,
                "voice_settings": self.voice_settings,
            },
        )
        return pcm16_bytes_to_float(response.content), self.sample_rate


class TextNormalizer:
    """
    Normalize English text for better TTS output.

    Handles abbreviations, numbers and symbols.
    """

    ABBREVIATIONS = {
        "Dr.": "Doctor",
        "Mr.": "Mister",
        "Mrs.": "Missus",
        "Ms.": "Miss",
        "Prof.": "Professor",
        "vs.": "versus",
        "etc.": "et cetera",
        "e.g.": "for example",
        "i.e.": "that is",
    }

    SYMBOLS = {
        "&": " and ",
        "%": " percent",
        "@": " at ",
        "+": " plus ",
        "=": " equals ",
    }

    ONES = ["", "one", "two", "three", "four", "five", "six", "seven", "eight", "nine"]
    TEENS = ["ten", "eleven", "twelve", "thirteen", "fourteen", "fifteen",
             "sixteen", "seventeen", "eighteen", "nineteen"]
    TENS = ["", "", "twenty", "thirty", "forty", "fifty", "sixty", "seventy", "eighty", "ninety"]

    @classmethod
    def normalize(cls, text: str) -> str:
        for abbr, full in cls.ABBREVIATIONS.items():
            text = text.replace(abbr, full)
        for symbol, spoken in cls.SYMBOLS.items():
            text = text.replace(symbol, spoken)

        # Simple numbers (up to 999)
        text = re.sub(r'\b(\d{1,3})\b', lambda m: cls.number_to_words(int(m.group(1))), text)

        text = re.sub(r'\s+', ' ', text)
        text = text.replace('"', '')
        return text.strip()

    @classmethod
    def number_to_words(cls, n: int) -> str:
        """Convert number (0-999) to words."""
        if n == 0:
            return "zero"
        if n < 10:
            return cls.ONES[n]
        if n < 20:
            return cls.TEENS[n - 10]
        if n < 100:
            tens, ones = divmod(n, 10)
            return cls.TENS[tens] + (" " + cls.ONES[ones] if ones else "")
        if n < 1000:
            hundreds, remainder = divmod(n, 100)
            result = cls.ONES[hundreds] + " hundred"
            if remainder:
                result += " " + cls.number_to_words(remainder)
            return result
        return str(n)


@dataclass
class TTSConfig:
    """Configuration for local Piper synthesis."""
    models_dir: str = "models/tts"  # Searched recursively for <piper_voice>.onnx
    model_path: str = ""            # Explicit .onnx, used when no per-voice model is found
    speaker_id: Optional[int] = None
    length_scale: float = 1.05      # Speed: <1 faster, >1 slower
    noise_scale: float = 0.667      # Variation
    noise_w_scale: float = 0.8
    normalize_text: bool = True


class PiperSpeechProvider(SpeechProvider):
    """
    Local offline fallback with Piper TTS.

    Voices are loaded on first use and cached. Synthesis runs in a worker
    thread.

    Usage:
        provider = PiperSpeechProvider(TTSConfig(models_dir="models/tts"))
        audio, sample_rate = await provider.synthesize("Hello!", VOICES["en-US"])
    """

    name = "piper"

    def __init__(self, config: Optional[TTSConfig] = None, voices: Optional[Dict[str, object]] = None):
        self.config = config or TTSConfig()
        self._voices: Dict[str, object] = dict(voices or {})
        self._lock = threading.Lock()
        self._normalizer = TextNormalizer()

        # Statistics
        self._stats = {
            "syntheses": 0,
            "total_chars": 0,
            "total_time": 0.0,
        }

    @property
    def available(self) -> bool:
        return bool(self._voices) or HAS_PIPER

    def find_model(self, voice: VoiceConfig) -> Path:
        """Locate the .onnx file for a voice."""
        models_dir = Path(self.config.models_dir)
        if models_dir.exists():
            matches = sorted(models_dir.rglob(f"{voice.piper_voice}.onnx"))
            if matches:
                return matches[0]
        if self.config.model_path and Path(self.config.model_path).exists():
            return Path(self.config.model_path)
        raise FileNotFoundError(
            f"No Piper voice '{voice.piper_voice}' in {models_dir}. Download with:\n"
            f"  python -m piper.download_voices {voice.piper_voice} --data-dir {models_dir}"
        )

    def _load_voice(self, voice: VoiceConfig):
        with self._lock:
            loaded = self._voices.get(voice.piper_voice)
            if loaded is not None:
                return loaded
            if not HAS_PIPER:
                raise ImportError("piper-tts not installed. Run: pip install piper-tts")

            model_path = self.find_model(voice)
            log.info("Loading Piper voice: %s", model_path.stem)
            load_start = time.time()
            loaded = PiperVoice.load(str(model_path))
            log.info(
                "Piper voice loaded in %.2fs (%d Hz)",
                time.time() - load_start, loaded.config.sample_rate,
            )
            self._voices[voice.piper_voice] = loaded
            return loaded

    def _synthesize(self, text: str, voice: VoiceConfig) -> Tuple[np.ndarray, int]:
        piper_voice = self._load_voice(voice)
        sample_rate = piper_voice.config.sample_rate

        if self.config.normalize_text and voice.language == LANG_EN:
            text = self._normalizer.normalize(text)

        from piper.config import SynthesisConfig

        syn_config = SynthesisConfig(
            speaker_id=self.config.speaker_id,
            length_scale=self.config.length_scale,
            noise_scale=self.config.noise_scale,
            noise_w_scale=self.config.noise_w_scale,
        )

        start_time = time.time()
        chunks = [chunk.audio_float_array for chunk in piper_voice.synthesize(text, syn_config=syn_config)]
        if not chunks:
            return np.zeros(0, dtype=np.float32), sample_rate

        self._stats["syntheses"] += 1
        self._stats["total_chars"] += len(text)
        self._stats["total_time"] += time.time() - start_time
        return np.concatenate(chunks).astype(np.float32), sample_rate

    async def synthesize(self, text: str, voice: VoiceConfig) -> Tuple[np.ndarray, int]:
        try:
            return await asyncio.to_thread(self._synthesize, text, voice)
        except (ImportError, FileNotFoundError) as e:
            raise TransportError(self.name, str(e), category="config") from e
        except Exception as e:
            raise TransportError(self.name, f"synthesis failed: {e}", category="inference") from e

    def get_stats(self) -> dict:
        stats = dict(self._stats)
        if stats["syntheses"] > 0:
            stats["avg_time"] = stats["total_time"] / stats["syntheses"]
        return stats


# =============================================================================
# Synthesizer (fallback chain + playback)
# =============================================================================

@dataclass
class SynthesizerConfig:
    """Configuration for the synthesis chain."""
    provider_timeout_sec: Optional[float] = 15.0   # Per-provider synthesis deadline
    voices: Dict[str, VoiceConfig] = field(default_factory=lambda: dict(VOICES))


class SpeechSynthesizer:
    """
    Speaks text through the first provider that produces playable audio.

    Usage:
        synthesizer = SpeechSynthesizer([azure, elevenlabs, piper], AudioOutput())
        await synthesizer.speak("I hear you.")   # returns after playback
    """

    def __init__(
        self,
        providers: Sequence[SpeechProvider],
        output: AudioOutput,
        config: Optional[SynthesizerConfig] = None,
    ):
        self.providers = list(providers)
        self.output = output
        self.config = config or SynthesizerConfig()
        self.last_failures: List[TransportError] = []
        self.last_provider: Optional[str] = None
        self.last_voice: Optional[VoiceConfig] = None

    def select_voice(self, text: str) -> VoiceConfig:
        return select_voice(text, self.config.voices)

    async def _synthesize(self, provider: SpeechProvider, text: str, voice: VoiceConfig):
        call = provider.synthesize(text, voice)
        timeout = self.config.provider_timeout_sec
        try:
            if timeout is None:
                audio, sample_rate = await call
            else:
                audio, sample_rate = await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                provider.name, f"no audio within {timeout:.1f}s", category="timeout"
            ) from e
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(provider.name, str(e) or type(e).__name__) from e

        if audio is None or len(audio) == 0:
            raise TransportError(provider.name, "empty audio", category="empty")
        return audio, sample_rate

    async def speak(self, text: str, voice: Optional[VoiceConfig] = None) -> None:
        """
        Synthesize and play text. Returns once playback has finished.

        Raises:
            SynthesisExhaustedError: no provider produced audible output
        """
        voice = voice or self.select_voice(text)
        self.last_voice = voice
        self.last_provider = None
        failures: List[TransportError] = []

        for provider in self.providers:
            if not provider.available:
                log.info("Skipping %s voice provider: not configured", provider.name)
                continue
            try:
                audio, sample_rate = await self._synthesize(provider, text, voice)
            except TransportError as e:
                log.warning(
                    "Synthesis provider %s failed (status=%s, %s): %s",
                    e.provider, e.status, e.category, e,
                )
                failures.append(e)
                continue

            log.info(
                "Speaking with %s (%s, %.1fs audio)",
                provider.name, voice.name, len(audio) / sample_rate,
            )
            try:
                await self.output.play(audio, sample_rate)
            except AudioPlaybackError as e:
                log.warning("Playback of %s audio failed: %s", provider.name, e)
                failures.append(TransportError(provider.name, str(e), category="playback"))
                continue

            self.last_failures = failures
            self.last_provider = provider.name
            return

        self.last_failures = failures
        raise SynthesisExhaustedError(failures)

    def stop(self) -> None:
        """Cut off current playback."""
        self.output.stop()

    async def aclose(self) -> None:
        await self.output.close()
        for provider in self.providers:
            await provider.aclose()
