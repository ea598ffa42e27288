# AuraVoice - Utils Package
from .audio_utils import *

__all__ = [
    "compute_rms",
    "float_to_pcm16",
    "pcm16_to_float",
    "float_to_pcm16_bytes",
    "pcm16_bytes_to_float",
    "resample",
    "decode_wav_bytes",
    "apply_fade",
]
