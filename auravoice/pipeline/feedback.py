"""
Visual Feedback Mapper
======================

Converts (phase, intensity) into smoothed render values for the orb.

Targets per phase:
- IDLE:       brightness 1, bloom 1, scale breathing gently around 1
- LISTENING:  brightness 1 + i*2.0, bloom 1.5 + i*4.5, scale 1 + i*0.9
- PROCESSING/SPEAKING: the frame from the last LISTENING tick, held as-is

Holding the last listening frame keeps the orb's energy tied to the user's
last words instead of decaying while the assistant thinks or talks.

Each channel moves toward its target with its own lerp rate. Rates are
expressed per frame at reference_fps and corrected for the real tick
interval, so a 30 Hz loop and a 60 Hz loop settle at the same speed.
"""

from dataclasses import dataclass
from typing import Optional
import math

from .config import Phase


# Numeric phase code consumed by the renderer
PHASE_CODES = {
    Phase.IDLE: 0.0,
    Phase.LISTENING: 1.0,
    Phase.PROCESSING: 1.5,
    Phase.SPEAKING: 1.5,
}


@dataclass(frozen=True)
class FeedbackState:
    """Smoothed visual signals. Read-only to the renderer."""
    brightness: float = 1.0
    bloom: float = 1.0
    scale: float = 1.0


@dataclass(frozen=True)
class RenderFrame:
    """Everything the renderer receives on one tick."""
    phase_code: float = 0.0
    brightness: float = 1.0
    bloom: float = 1.0
    scale: float = 1.0
    intensity: float = 0.0

    @property
    def state(self) -> FeedbackState:
        return FeedbackState(self.brightness, self.bloom, self.scale)


@dataclass
class FeedbackConfig:
    """Tuning for the visual feedback mapping."""
    brightness_gain: float = 2.0        # Listening brightness = 1 + i * gain
    bloom_base: float = 1.5             # Listening bloom = base + i * gain
    bloom_gain: float = 4.5
    scale_gain: float = 0.9             # Listening scale = 1 + i * gain
    idle_scale_amplitude: float = 0.03  # Idle breathing depth
    idle_period_sec: float = 4.0        # Idle breathing period

    # Lerp factor per frame at reference_fps
    brightness_rate: float = 0.06
    bloom_rate: float = 0.06
    scale_rate: float = 0.12
    intensity_rate: float = 0.1
    phase_rate: float = 0.05
    reference_fps: float = 60.0

    freeze_outside_listening: bool = True


def _lerp(current: float, target: float, alpha: float) -> float:
    return current + (target - current) * alpha


class VisualFeedbackMapper:
    """
    Exponential smoothing of brightness/bloom/scale toward phase targets.

    Usage:
        mapper = VisualFeedbackMapper()
        frame = mapper.update(Phase.LISTENING, analyzer.intensity(), dt=1/30)
        renderer(frame)
    """

    def __init__(self, config: Optional[FeedbackConfig] = None):
        self.config = config or FeedbackConfig()
        self._frame = RenderFrame()
        self._last_listening: Optional[RenderFrame] = None
        self._clock = 0.0

    @property
    def frame(self) -> RenderFrame:
        """Most recent frame produced."""
        return self._frame

    @property
    def state(self) -> FeedbackState:
        return self._frame.state

    def reset(self) -> None:
        self._frame = RenderFrame()
        self._last_listening = None
        self._clock = 0.0

    def update(self, phase: Phase, intensity: float, dt: Optional[float] = None) -> RenderFrame:
        """
        Advance one tick.

        Args:
            phase: Current orchestrator phase
            intensity: Raw analyzer intensity in [0, 1]
            dt: Seconds since the previous tick (None = one reference frame)

        Returns:
            The frame to hand to the renderer
        """
        cfg = self.config
        intensity = min(max(float(intensity), 0.0), 1.0)
        step = 1.0 / cfg.reference_fps if dt is None else max(float(dt), 0.0)
        self._clock += step

        frozen = phase in (Phase.PROCESSING, Phase.SPEAKING) and cfg.freeze_outside_listening
        if frozen:
            if self._last_listening is not None:
                self._frame = self._last_listening
            return self._frame

        if phase == Phase.LISTENING:
            target_intensity = intensity
            target = FeedbackState(
                brightness=1.0 + intensity * cfg.brightness_gain,
                bloom=cfg.bloom_base + intensity * cfg.bloom_gain,
                scale=1.0 + intensity * cfg.scale_gain,
            )
        else:
            # Idle, or busy phases when freezing is turned off
            target_intensity = 0.0
            breathing = math.sin(2.0 * math.pi * self._clock / cfg.idle_period_sec)
            target = FeedbackState(
                brightness=1.0,
                bloom=1.0,
                scale=1.0 + cfg.idle_scale_amplitude * breathing,
            )

        frames = step * cfg.reference_fps

        def alpha(rate: float) -> float:
            return 1.0 - (1.0 - rate) ** frames

        prev = self._frame
        self._frame = RenderFrame(
            phase_code=_lerp(prev.phase_code, PHASE_CODES[phase], alpha(cfg.phase_rate)),
            brightness=_lerp(prev.brightness, target.brightness, alpha(cfg.brightness_rate)),
            bloom=_lerp(prev.bloom, target.bloom, alpha(cfg.bloom_rate)),
            scale=_lerp(prev.scale, target.scale, alpha(cfg.scale_rate)),
            intensity=_lerp(prev.intensity, target_intensity, alpha(cfg.intensity_rate)),
        )

        if phase == Phase.LISTENING:
            self._last_listening = self._frame

        return self._frame
