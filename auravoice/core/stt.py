"""
AuraVoice - Speech Recognition Module
=====================================

Listen to the microphone and emit transcripts.

Contract (SpeechRecognizer):
- connect(on_transcript, on_error) opens the microphone and starts listening
- zero or more interim transcripts, then exactly one final per utterance
- after the final the recognizer stops itself; the caller reconnects
- disconnect() is idempotent and releases the microphone
- runtime failures go to on_error, never raised across the loop

WhisperRecognizer implements it with faster-whisper:
- the utterance is buffered from the MicrophoneStream
- a quick greedy pass runs every partial_interval_sec for interim text
- finalize() (end-of-turn hint) or the max-utterance cap runs the full pass

Model sizes:
- tiny: ~400MB RAM, fastest
- base: ~500MB RAM
- small: ~1GB RAM, best quality for mixed English/Chinese
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional
import asyncio
import logging
import os
import threading
import time

import numpy as np

from .audio_input import MicrophoneConfig, MicrophoneStream
from .errors import RecognitionConnectionError
from ..utils.audio_utils import compute_rms, resample

# Import faster-whisper
try:
    from faster_whisper import WhisperModel
    HAS_FASTER_WHISPER = True
except ImportError:
    HAS_FASTER_WHISPER = False

log = logging.getLogger(__name__)

WHISPER_SAMPLE_RATE = 16000


@dataclass(frozen=True)
class Transcript:
    """One recognition result."""
    text: str
    is_final: bool


TranscriptCallback = Callable[[Transcript], None]
ErrorCallback = Callable[[Exception], None]


class SpeechRecognizer(ABC):
    """
    Capability interface for "listen and emit transcripts".

    Callbacks are invoked on the event loop that called connect().
    """

    name: str = "recognizer"

    @abstractmethod
    async def connect(
        self,
        on_transcript: TranscriptCallback,
        on_error: ErrorCallback,
    ) -> None:
        """
        Acquire the microphone and start listening.

        Raises:
            MicrophonePermissionError: microphone access denied
            RecognitionConnectionError: device or backend unavailable
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop listening and release the microphone. Idempotent."""

    @abstractmethod
    def get_media_stream(self) -> Optional[MicrophoneStream]:
        """The live microphone stream, or None when disconnected."""

    async def finalize(self) -> None:
        """End-of-turn hint: emit the final transcript for what was heard."""

    @property
    def is_connected(self) -> bool:
        return self.get_media_stream() is not None


@dataclass
class STTConfig:
    """Configuration for Speech-to-Text."""
    model_size: str = "small"       # tiny, base, small, ...
    device: str = "cpu"             # cpu or cuda
    compute_type: str = "int8"      # int8, float16, float32
    beam_size: int = 1              # 1 for speed, 3-5 for accuracy
    language: Optional[str] = None  # None for auto-detect (English/Chinese)
    cpu_threads: int = 4
    download_root: Optional[str] = None  # Model download directory

    # Streaming behaviour
    partial_interval_sec: float = 1.0   # Interim transcript cadence
    min_partial_sec: float = 0.5        # Audio needed before the first interim
    max_utterance_sec: float = 30.0     # Hard cap: finalize automatically
    min_rms: float = 0.005              # Quieter buffers are treated as silence


class WhisperRecognizer(SpeechRecognizer):
    """
    Microphone + faster-whisper speech recognizer.

    Usage:
        recognizer = WhisperRecognizer(STTConfig(model_size="small"))
        await recognizer.connect(on_transcript, on_error)
        ...
        await recognizer.finalize()     # emits the final transcript
        await recognizer.disconnect()
    """

    name = "whisper"

    def __init__(
        self,
        config: Optional[STTConfig] = None,
        mic_config: Optional[MicrophoneConfig] = None,
        model=None,
    ):
        if model is None and not HAS_FASTER_WHISPER:
            raise ImportError(
                "faster-whisper not installed. "
                "Run: pip install faster-whisper"
            )

        self.config = config or STTConfig()
        self.mic_config = mic_config or MicrophoneConfig()

        self._model = model
        self._model_lock = threading.Lock()
        self._mic: Optional[MicrophoneStream] = None
        self._buffer: List[np.ndarray] = []
        self._buffer_lock = threading.Lock()
        self._on_transcript: Optional[TranscriptCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._partial_task: Optional[asyncio.Task] = None
        self._finalize_task: Optional[asyncio.Task] = None
        self._finalizing = False
        self._last_partial = ""

        # Statistics
        self._stats = {
            "transcriptions": 0,
            "total_audio_seconds": 0.0,
            "total_processing_seconds": 0.0,
        }

    # =========================================================================
    # Model
    # =========================================================================

    def _load_model(self):
        with self._model_lock:
            if self._model is not None:
                return self._model

            if self.config.download_root:
                download_root = self.config.download_root
            else:
                project_root = Path(__file__).parent.parent.parent
                download_root = str(project_root / "models" / "stt")
            os.makedirs(download_root, exist_ok=True)

            log.info(
                "Loading Whisper model '%s' (device=%s, compute=%s)",
                self.config.model_size, self.config.device, self.config.compute_type,
            )
            load_start = time.time()
            self._model = WhisperModel(
                model_size_or_path=self.config.model_size,
                device=self.config.device,
                compute_type=self.config.compute_type,
                cpu_threads=self.config.cpu_threads,
                download_root=download_root,
            )
            log.info("Whisper model loaded in %.1fs", time.time() - load_start)
            return self._model

    def transcribe(self, audio: np.ndarray, partial: bool = False) -> str:
        """
        Transcribe a 16kHz float32 buffer. Blocking.

        Args:
            audio: np.ndarray float32, shape (samples,) at 16kHz
            partial: Greedy decoding without context, for interim text
        """
        if audio is None or audio.size == 0:
            return ""
        if compute_rms(audio) < self.config.min_rms:
            return ""

        model = self._load_model()
        start_time = time.time()

        segments, _ = model.transcribe(
            audio.astype(np.float32).flatten(),
            beam_size=1 if partial else self.config.beam_size,
            language=self.config.language,
            vad_filter=not partial,
            word_timestamps=False,
            condition_on_previous_text=not partial,
        )
        text = " ".join(segment.text.strip() for segment in segments).strip()

        self._stats["transcriptions"] += 1
        self._stats["total_audio_seconds"] += len(audio) / WHISPER_SAMPLE_RATE
        self._stats["total_processing_seconds"] += time.time() - start_time
        return text

    # =========================================================================
    # SpeechRecognizer
    # =========================================================================

    async def connect(
        self,
        on_transcript: TranscriptCallback,
        on_error: ErrorCallback,
    ) -> None:
        await self.disconnect()

        try:
            await asyncio.to_thread(self._load_model)
        except Exception as e:
            raise RecognitionConnectionError(f"Could not load Whisper model: {e}") from e

        self._on_transcript = on_transcript
        self._on_error = on_error
        self._clear_buffer()
        self._finalizing = False
        self._last_partial = ""

        mic = MicrophoneStream(self.mic_config)
        mic.add_listener(self._on_audio)
        await asyncio.to_thread(mic.open)
        self._mic = mic

        self._partial_task = asyncio.get_running_loop().create_task(self._partial_loop())

    async def disconnect(self) -> None:
        await self._cancel(self._partial_task)
        await self._cancel(self._finalize_task)
        self._partial_task = None
        self._finalize_task = None

        mic, self._mic = self._mic, None
        if mic is not None:
            mic.remove_listener(self._on_audio)
            mic.close()

        self._clear_buffer()

    def get_media_stream(self) -> Optional[MicrophoneStream]:
        return self._mic

    async def finalize(self) -> None:
        mic = self._mic
        if mic is None or self._finalizing:
            return
        self._finalizing = True

        audio = self._snapshot_buffer()
        try:
            text = await asyncio.to_thread(self.transcribe, audio, False)
        except Exception:
            log.exception("Final transcription failed")
            text = ""

        if self._mic is not mic:
            # Disconnected (or reconnected) while transcribing
            return

        if not text:
            log.debug("No speech in utterance, still listening")
            self._clear_buffer()
            self._last_partial = ""
            self._finalizing = False
            return

        on_transcript = self._on_transcript
        # Non-continuous: stop before handing over the final result
        await self.disconnect()
        if on_transcript is not None:
            on_transcript(Transcript(text=text, is_final=True))

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _on_audio(self, audio: np.ndarray) -> None:
        """Microphone listener (audio thread)."""
        with self._buffer_lock:
            self._buffer.append(audio)

    def _clear_buffer(self) -> None:
        with self._buffer_lock:
            self._buffer = []

    def _snapshot_buffer(self) -> np.ndarray:
        with self._buffer_lock:
            chunks = list(self._buffer)
        if not chunks:
            return np.zeros(0, dtype=np.float32)
        audio = np.concatenate(chunks)
        if self.mic_config.sample_rate != WHISPER_SAMPLE_RATE:
            audio = resample(audio, self.mic_config.sample_rate, WHISPER_SAMPLE_RATE)
        return audio

    def _buffered_seconds(self) -> float:
        with self._buffer_lock:
            samples = sum(len(chunk) for chunk in self._buffer)
        return samples / self.mic_config.sample_rate

    async def _partial_loop(self) -> None:
        interval = self.config.partial_interval_sec
        while True:
            await asyncio.sleep(interval)
            mic = self._mic
            if mic is None:
                return

            if not mic.is_active:
                if self._on_error is not None:
                    self._on_error(RecognitionConnectionError("Microphone stream stopped"))
                return

            if self._finalizing:
                continue

            seconds = self._buffered_seconds()
            if seconds >= self.config.max_utterance_sec:
                log.info("Utterance reached %.0fs cap, finalizing", seconds)
                self._finalize_task = asyncio.get_running_loop().create_task(self.finalize())
                continue

            if seconds < self.config.min_partial_sec:
                continue

            audio = self._snapshot_buffer()
            try:
                text = await asyncio.to_thread(self.transcribe, audio, True)
            except Exception as e:
                log.warning("Partial transcription failed: %s", e)
                continue

            if self._mic is None or self._finalizing:
                continue
            if text and text != self._last_partial:
                self._last_partial = text
                if self._on_transcript is not None:
                    self._on_transcript(Transcript(text=text, is_final=False))

    def get_stats(self) -> Dict:
        """Transcription statistics including real-time factor."""
        total_audio = self._stats["total_audio_seconds"]
        total_process = self._stats["total_processing_seconds"]
        return {
            **self._stats,
            "average_real_time_factor": total_process / total_audio if total_audio > 0 else 0,
        }
