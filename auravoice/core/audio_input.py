"""
AuraVoice - Audio Input Module
==============================

Captures audio from the microphone and fans it out to listeners.

Features:
- sounddevice InputStream with a callback thread
- Mic gain with clipping
- Any number of listeners (analyzer, recognizer buffer, ...)
- Open failures mapped to MicrophonePermissionError / RecognitionConnectionError

The stream is the "media stream" of the session: whoever opens it owns the
device until close() is called.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
import logging
import os
import threading

import numpy as np

from .errors import MicrophonePermissionError, RecognitionConnectionError

log = logging.getLogger(__name__)

AudioListener = Callable[[np.ndarray], None]

# Substrings that identify an OS/backend permission refusal
_PERMISSION_MARKERS = ("permission", "denied", "not authorized", "not permitted")


@dataclass
class MicrophoneConfig:
    sample_rate: int = 16000
    channels: int = 1
    frame_ms: int = 20
    device: Optional[int] = None
    mic_gain: float = 1.0  # Microphone boost (1.0 = none)


class MicrophoneStream:
    """
    Live microphone capture.

    Usage:
        mic = MicrophoneStream(MicrophoneConfig(sample_rate=16000))
        mic.add_listener(analyzer.push)
        mic.open()
        ...
        mic.close()
    """

    def __init__(self, config: Optional[MicrophoneConfig] = None):
        self.config = config or MicrophoneConfig()
        self.frame_samples = int(self.config.sample_rate * self.config.frame_ms / 1000)

        self._stream = None
        self._listeners: List[AudioListener] = []
        self._lock = threading.Lock()
        self._overflow_count = 0

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def is_active(self) -> bool:
        """False once the device stops delivering audio (unplugged, backend error)."""
        return self._stream is not None and bool(self._stream.active)

    @property
    def sample_rate(self) -> int:
        return self.config.sample_rate

    def add_listener(self, listener: AudioListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: AudioListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def open(self) -> None:
        """
        Open the input device and start capturing.

        Raises:
            MicrophonePermissionError: access to the device was refused
            RecognitionConnectionError: the device could not be opened
        """
        if self._stream is not None:
            return

        import sounddevice as sd

        try:
            stream = sd.InputStream(
                samplerate=self.config.sample_rate,
                channels=self.config.channels,
                dtype="float32",
                blocksize=self.frame_samples,
                callback=self._audio_callback,
                device=self.config.device,
                latency="low",
            )
            stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            raise self._classify_open_error(e) from e

        self._stream = stream
        self._overflow_count = 0
        log.info(
            "Microphone opened (device=%s, %d Hz, %d ms frames)",
            self.config.device if self.config.device is not None else "default",
            self.config.sample_rate,
            self.config.frame_ms,
        )

    def close(self) -> None:
        """Stop capturing and release the device. Idempotent."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
        log.info("Microphone released")

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        """Callback function for sounddevice stream (runs on the audio thread)."""
        if status and status.input_overflow:
            self._overflow_count += 1
            if self._overflow_count % 100 == 1:
                log.warning("Audio input overflow (%d so far)", self._overflow_count)

        audio = indata.copy().reshape(-1, self.config.channels).mean(axis=1).astype(np.float32)
        if self.config.mic_gain != 1.0:
            audio = (audio * self.config.mic_gain).clip(-1.0, 1.0)

        self._dispatch(audio)

    def _dispatch(self, audio: np.ndarray) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(audio)
            except Exception:
                log.exception("Audio listener %r failed", listener)

    @staticmethod
    def _check_audio_groups() -> Tuple[bool, bool]:
        """Check Linux 'audio' group membership. Returns (group_exists, is_member)."""
        try:
            import grp
            gid = grp.getgrnam("audio").gr_gid
        except (KeyError, ImportError, OSError):
            return (False, False)
        return (True, gid in set(os.getgroups()))

    def _classify_open_error(self, err: Exception) -> Exception:
        message = str(err)
        lowered = message.lower()
        if any(marker in lowered for marker in _PERMISSION_MARKERS):
            return MicrophonePermissionError(f"Microphone access denied: {message}")

        group_exists, is_member = self._check_audio_groups()
        if group_exists and not is_member and os.geteuid() != 0:
            return MicrophonePermissionError(
                f"Microphone access denied: {message} "
                "(add user to 'audio' group: sudo usermod -a -G audio $USER)"
            )

        return RecognitionConnectionError(f"Could not open microphone: {message}")

    @staticmethod
    def list_devices() -> List[Dict]:
        """List available input devices."""
        import sounddevice as sd

        devices = []
        for i, dev in enumerate(sd.query_devices()):
            if dev["max_input_channels"] > 0:
                devices.append({
                    "index": i,
                    "name": dev["name"],
                    "channels": dev["max_input_channels"],
                    "sample_rate": int(dev["default_samplerate"]),
                })
        return devices

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
