"""
Tests: Audio Intensity Analyzer
===============================

Run with pytest:
    pytest tests/test_audio_analyzer.py -v
"""

import numpy as np
import pytest

from auravoice.core.audio_analyzer import AnalyzerConfig, AudioIntensityAnalyzer


def tone(freq=440.0, amplitude=0.3, n=2048, sr=16000):
    t = np.arange(n) / sr
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


@pytest.fixture
def analyzer():
    return AudioIntensityAnalyzer()


def test_empty_analyzer_is_silent(analyzer):
    assert analyzer.intensity() == 0.0
    assert analyzer.frequency_data().shape == (1024,)


def test_digital_silence_is_zero(analyzer):
    analyzer.push(np.zeros(4096, dtype=np.float32))
    assert analyzer.intensity() == 0.0


def test_louder_signal_is_more_intense(analyzer):
    analyzer.push(tone(amplitude=0.01))
    quiet = analyzer.intensity()
    analyzer.push(tone(amplitude=0.5))
    loud = analyzer.intensity()

    assert 0.0 < quiet < loud <= 1.0


def test_noise_lands_in_range(analyzer):
    noise = np.random.default_rng(1).normal(0, 0.1, 2048).astype(np.float32)
    analyzer.push(noise)
    value = analyzer.intensity()
    assert 0.0 < value <= 1.0


def test_intensity_is_clamped():
    analyzer = AudioIntensityAnalyzer(AnalyzerConfig(calibration=1.0))
    analyzer.push(np.random.default_rng(2).uniform(-1, 1, 2048).astype(np.float32))
    assert analyzer.intensity() == 1.0


def test_frequency_data_bytes_range(analyzer):
    analyzer.push(tone(amplitude=1.0))
    data = analyzer.frequency_data()
    assert data.min() >= 0.0
    assert data.max() <= 255.0


def test_window_keeps_latest_samples(analyzer):
    analyzer.push(tone(amplitude=0.5, n=4096))
    analyzer.push(np.zeros(2048, dtype=np.float32))
    assert analyzer.intensity() == 0.0


def test_reset_forgets_frame(analyzer):
    analyzer.push(tone())
    analyzer.reset()
    assert analyzer.intensity() == 0.0


@pytest.mark.parametrize("kwargs", [
    {"fft_size": 1000},
    {"fft_size": 0},
    {"min_db": -30.0, "max_db": -100.0},
    {"calibration": 0.0},
])
def test_invalid_config(kwargs):
    with pytest.raises(ValueError):
        AudioIntensityAnalyzer(AnalyzerConfig(**kwargs))
