"""
AuraVoice - Audio Output Module
===============================

Plays synthesized audio through the speakers.

Features:
- Queued sequential playback: clips never overlap
- play() resolves when playback has audibly finished, not when queued
- Volume control and short fades against clicks
- stop() drops everything queued; close() shuts the worker down

Dependencies:
- sounddevice (uses PortAudio)
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import asyncio
import logging

import numpy as np

from .errors import VoiceAssistantError
from ..utils.audio_utils import apply_fade, pcm16_to_float

log = logging.getLogger(__name__)


class AudioPlaybackError(VoiceAssistantError):
    """The output device failed while playing a clip."""


@dataclass
class AudioOutputConfig:
    """Configuration for audio output."""
    device: Optional[int] = None    # None = default device
    volume: float = 1.0             # 0.0 to 1.0
    latency: str = "low"            # "low", "high"
    fade_ms: int = 10               # Fade in/out duration for smooth starts/stops


class AudioOutput:
    """
    Plays audio clips one after another on a single output device.

    Usage:
        output = AudioOutput(AudioOutputConfig(volume=0.9))
        await output.play(audio, sample_rate)   # returns after playback
        ...
        await output.close()
    """

    def __init__(self, config: Optional[AudioOutputConfig] = None):
        self.config = config or AudioOutputConfig()
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._playing = False

    def is_playing(self) -> bool:
        return self._playing

    async def play(self, audio: np.ndarray, sample_rate: int) -> None:
        """
        Queue a clip and wait until it has finished playing.

        Args:
            audio: Audio data (int16 or float32)
            sample_rate: Sample rate in Hz

        Raises:
            AudioPlaybackError: the device failed during playback
        """
        if audio is None or len(audio) == 0:
            return

        loop = asyncio.get_running_loop()
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run())

        done: asyncio.Future = loop.create_future()
        await self._queue.put((self._prepare(audio, sample_rate), sample_rate, done))
        await done

    def _prepare(self, audio: np.ndarray, sample_rate: int) -> np.ndarray:
        # Convert int16 to float32 if needed
        if audio.dtype == np.int16:
            audio = pcm16_to_float(audio)

        audio = np.asarray(audio, dtype=np.float32) * self.config.volume
        audio = np.clip(audio, -1.0, 1.0)

        fade = int(self.config.fade_ms * sample_rate / 1000)
        return apply_fade(audio, fade, fade)

    async def _run(self) -> None:
        while True:
            audio, sample_rate, done = await self._queue.get()
            if done.done():
                continue
            self._playing = True
            try:
                await asyncio.to_thread(self._play_blocking, audio, sample_rate)
            except Exception as e:
                if not done.done():
                    done.set_exception(AudioPlaybackError(f"Audio playback error: {e}"))
            else:
                if not done.done():
                    done.set_result(None)
            finally:
                self._playing = False

    def _play_blocking(self, audio: np.ndarray, sample_rate: int) -> None:
        import sounddevice as sd

        sd.play(
            audio.reshape(-1, 1),
            samplerate=sample_rate,
            device=self.config.device,
            latency=self.config.latency,
        )
        sd.wait()

    def stop(self) -> None:
        """Stop current playback and drop queued clips. Waiters are released."""
        pending: List[Tuple] = []
        if self._queue is not None:
            while not self._queue.empty():
                pending.append(self._queue.get_nowait())
        for _, _, done in pending:
            if not done.done():
                done.set_result(None)

        if self._playing:
            import sounddevice as sd
            sd.stop()

    async def close(self) -> None:
        """Stop playback and shut down the playback worker."""
        self.stop()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    def set_volume(self, volume: float) -> None:
        """Set playback volume (0.0 to 1.0)."""
        self.config.volume = max(0.0, min(1.0, volume))
