"""
AuraVoice - Audio Utilities
===========================

Common audio processing functions used across modules.

PCM16 conversion follows the usual asymmetric convention: negative samples
scale by 32768, positive samples by 32767, so -1.0 and 1.0 land exactly on
the int16 limits.
"""

from typing import Tuple
import io

import numpy as np
from scipy import signal as sps
from scipy.io import wavfile


PCM16_MIN = -32768
PCM16_MAX = 32767


def compute_rms(audio: np.ndarray) -> float:
    """
    Compute RMS (Root Mean Square) energy of audio.

    Args:
        audio: Audio samples (any dtype)

    Returns:
        RMS value (float)
    """
    if audio.size == 0:
        return 0.0

    audio = audio.astype(np.float64)
    return float(np.sqrt(np.mean(audio ** 2)))


def float_to_pcm16(audio: np.ndarray) -> np.ndarray:
    """
    Convert float32 [-1, 1] audio to int16 [-32768, 32767].

    Out-of-range input saturates at the int16 limits instead of wrapping.

    Args:
        audio: Float audio array

    Returns:
        Int16 audio array (same sample count)
    """
    clipped = np.clip(np.asarray(audio, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return np.clip(np.round(scaled), PCM16_MIN, PCM16_MAX).astype(np.int16)


def pcm16_to_float(audio: np.ndarray) -> np.ndarray:
    """
    Convert int16 [-32768, 32767] audio to float32 [-1, 1].

    Args:
        audio: Int16 audio array

    Returns:
        Float32 audio array
    """
    audio = np.asarray(audio, dtype=np.int16).astype(np.float32)
    return np.where(audio < 0, audio / 32768.0, audio / 32767.0).astype(np.float32)


def float_to_pcm16_bytes(audio: np.ndarray) -> bytes:
    """Convert float audio to little-endian PCM16 bytes."""
    return float_to_pcm16(audio).astype("<i2").tobytes()


def pcm16_bytes_to_float(pcm: bytes) -> np.ndarray:
    """
    Convert PCM bytes to float32 audio.

    A trailing odd byte (half a sample) is dropped.

    Args:
        pcm: PCM bytes (little-endian int16)

    Returns:
        Float32 audio array
    """
    usable = len(pcm) - (len(pcm) % 2)
    int16_audio = np.frombuffer(pcm[:usable], dtype="<i2")
    return pcm16_to_float(int16_audio)


def resample(audio: np.ndarray, from_sr: int, to_sr: int) -> np.ndarray:
    """
    Resample audio with a polyphase filter.

    Args:
        audio: Audio array
        from_sr: Source sample rate
        to_sr: Target sample rate

    Returns:
        Resampled float32 audio
    """
    if from_sr == to_sr or audio.size == 0:
        return np.asarray(audio, dtype=np.float32)

    g = np.gcd(int(from_sr), int(to_sr))
    return sps.resample_poly(audio, up=to_sr // g, down=from_sr // g).astype(np.float32)


def decode_wav_bytes(data: bytes) -> Tuple[np.ndarray, int]:
    """
    Decode a RIFF/WAV payload to mono float32.

    Args:
        data: WAV file contents

    Returns:
        Tuple of (audio, sample_rate)
    """
    sample_rate, audio = wavfile.read(io.BytesIO(data))

    if audio.ndim > 1:
        audio = audio.mean(axis=1)

    if audio.dtype == np.int16:
        audio = pcm16_to_float(audio)
    elif audio.dtype == np.int32:
        audio = audio.astype(np.float32) / 2147483648.0
    elif audio.dtype == np.uint8:
        audio = (audio.astype(np.float32) - 128.0) / 128.0

    return np.asarray(audio, dtype=np.float32), int(sample_rate)


def apply_fade(
    audio: np.ndarray,
    fade_in_samples: int = 0,
    fade_out_samples: int = 0
) -> np.ndarray:
    """
    Apply fade-in and/or fade-out to audio.

    Args:
        audio: Audio array
        fade_in_samples: Number of samples for fade-in
        fade_out_samples: Number of samples for fade-out

    Returns:
        Audio with fades applied
    """
    audio = audio.copy()

    if len(audio) < fade_in_samples + fade_out_samples:
        return audio  # Too short to fade

    if fade_in_samples > 0:
        fade_in = np.linspace(0, 1, fade_in_samples, dtype=np.float32)
        audio[:fade_in_samples] *= fade_in

    if fade_out_samples > 0:
        fade_out = np.linspace(1, 0, fade_out_samples, dtype=np.float32)
        audio[-fade_out_samples:] *= fade_out

    return audio
