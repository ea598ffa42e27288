"""
AuraVoice - Silence Detector
============================

Decides when the user has finished speaking.

Two-phase gate:
1. Latch - nothing fires until at least one sample exceeds the threshold.
   Ambient startup noise below the threshold never ends a turn.
2. Duration - after the latch is set, fire only when the time since the
   last loud sample reaches silence_duration_sec. Short pauses between
   words keep resetting the timer.

The rule lives in poll(now) so it can be driven by a fake clock. start()
runs it on a fixed interval on the event loop.

Threshold and duration depend on the microphone and the room, so both are
configuration inputs.
"""

from dataclasses import dataclass
from typing import Callable, Optional
import asyncio
import logging
import time

log = logging.getLogger(__name__)


@dataclass
class SilenceDetectorConfig:
    """Configuration for end-of-turn silence detection."""
    threshold: float = 0.08             # Intensity above this counts as sound
    silence_duration_sec: float = 3.5   # Quiet time after speech that ends the turn
    poll_interval_sec: float = 0.15     # Polling cadence


class SilenceDetector:
    """
    Polls an intensity source and raises an end-of-turn callback.

    Usage:
        detector = SilenceDetector(SilenceDetectorConfig(threshold=0.08))
        detector.start(analyzer.intensity, on_silence)
        ...
        await detector.stop()

        # Deterministic use (tests, custom loops)
        detector.reset(now=0.0)
        fired = detector.poll(intensity=0.4, now=0.15)
    """

    def __init__(
        self,
        config: Optional[SilenceDetectorConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or SilenceDetectorConfig()
        if self.config.poll_interval_sec <= 0:
            raise ValueError("poll_interval_sec must be positive")
        if self.config.silence_duration_sec < 0:
            raise ValueError("silence_duration_sec must not be negative")

        self._clock = clock
        self._speech_detected = False
        self._last_loud_at = 0.0
        self._fired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def speech_detected(self) -> bool:
        """True once a sample above the threshold has been seen this turn."""
        return self._speech_detected

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def reset(self, now: Optional[float] = None) -> None:
        """Clear the latch and restart the silence timer."""
        self._speech_detected = False
        self._fired = False
        self._last_loud_at = self._clock() if now is None else now

    def poll(self, intensity: float, now: Optional[float] = None) -> bool:
        """
        Feed one sample.

        Returns:
            True exactly once per turn, at the first poll where speech was
            latched and (now - last loud sample) >= silence_duration_sec.
        """
        if self._fired:
            return False

        now = self._clock() if now is None else now

        if intensity > self.config.threshold:
            self._speech_detected = True
            self._last_loud_at = now
            return False

        if not self._speech_detected:
            return False

        if now - self._last_loud_at >= self.config.silence_duration_sec:
            self._fired = True
            log.info(
                "Silence for %.0fms after speech, ending turn",
                (now - self._last_loud_at) * 1000,
            )
            return True

        return False

    def start(
        self,
        read_intensity: Callable[[], float],
        on_silence: Callable[[], None],
    ) -> None:
        """Start the polling timer on the running event loop."""
        if self.is_running:
            return
        self.reset()
        self._task = asyncio.get_running_loop().create_task(
            self._run(read_intensity, on_silence)
        )

    async def stop(self) -> None:
        """Stop the polling timer. Safe to call when not running."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(
        self,
        read_intensity: Callable[[], float],
        on_silence: Callable[[], None],
    ) -> None:
        interval = self.config.poll_interval_sec
        while True:
            await asyncio.sleep(interval)
            if self.poll(read_intensity()):
                on_silence()
                return
