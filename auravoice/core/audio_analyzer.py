"""
AuraVoice - Audio Intensity Analyzer
====================================

Turns the live microphone signal into a normalized loudness scalar.

Pipeline (per call to intensity()):
1. Take the most recent fft_size samples
2. Blackman window + real FFT
3. Magnitude -> decibels, mapped linearly from [min_db, max_db] onto [0, 255]
4. RMS over all frequency bins
5. Divide by the calibration constant (128) and clamp to [0, 1]

This is frequency-domain energy, not raw waveform amplitude. With the
default constants normal conversational speech lands around the middle of
the range, silence at 0 and shouting near 1.

The analyzer keeps only the current analysis window. Callers that want a
smoothed value apply their own exponential moving average.
"""

from dataclasses import dataclass
from typing import Optional
import threading

import numpy as np


@dataclass
class AnalyzerConfig:
    """Configuration for the intensity analyzer."""
    fft_size: int = 2048            # Analysis window (samples), power of two
    min_db: float = -100.0          # Maps to byte value 0
    max_db: float = -30.0           # Maps to byte value 255
    calibration: float = 128.0      # RMS(byte spectrum) / calibration = intensity


class AudioIntensityAnalyzer:
    """
    Computes a [0, 1] loudness value from the latest audio window.

    Frames are pushed from the capture thread (push is thread-safe) and read
    from the sampling loop.

    Usage:
        analyzer = AudioIntensityAnalyzer()
        mic.add_listener(analyzer.push)

        level = analyzer.intensity()   # 0.0 .. 1.0
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None):
        self.config = config or AnalyzerConfig()

        n = self.config.fft_size
        if n <= 0 or n & (n - 1):
            raise ValueError(f"fft_size must be a positive power of two, got {n}")
        if self.config.max_db <= self.config.min_db:
            raise ValueError("max_db must be greater than min_db")
        if self.config.calibration <= 0:
            raise ValueError("calibration must be positive")

        self._window = np.blackman(n).astype(np.float64)
        self._frame = np.zeros(0, dtype=np.float32)
        self._lock = threading.Lock()

    def push(self, samples: np.ndarray) -> None:
        """Append captured samples, keeping only the last fft_size of them."""
        samples = np.asarray(samples, dtype=np.float32).flatten()
        if samples.size == 0:
            return

        n = self.config.fft_size
        with self._lock:
            joined = np.concatenate([self._frame, samples])
            self._frame = joined[-n:]

    def reset(self) -> None:
        """Forget the current frame (e.g. when the microphone is released)."""
        with self._lock:
            self._frame = np.zeros(0, dtype=np.float32)

    def frequency_data(self) -> np.ndarray:
        """
        Byte-scaled magnitude spectrum of the current frame.

        Returns:
            float64 array of fft_size // 2 bins, each in [0, 255].
            All zeros when no audio has been pushed.
        """
        n = self.config.fft_size
        with self._lock:
            frame = self._frame.copy()

        if frame.size == 0:
            return np.zeros(n // 2, dtype=np.float64)

        # Left-pad a partial window so the bin layout stays fixed
        if frame.size < n:
            frame = np.pad(frame, (n - frame.size, 0))

        spectrum = np.fft.rfft(frame.astype(np.float64) * self._window)[: n // 2]
        magnitude = np.abs(spectrum) / n
        db = 20.0 * np.log10(np.maximum(magnitude, 1e-12))

        span = self.config.max_db - self.config.min_db
        scaled = 255.0 * (db - self.config.min_db) / span
        return np.clip(scaled, 0.0, 255.0)

    def intensity(self) -> float:
        """Normalized loudness of the current frame, clamped to [0, 1]."""
        data = self.frequency_data()
        rms = float(np.sqrt(np.mean(data ** 2)))
        return min(rms / self.config.calibration, 1.0)
