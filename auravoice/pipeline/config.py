"""
Orchestrator Configuration
==========================

Phase/status enums and timing configuration for the turn orchestrator.
"""

from dataclasses import dataclass
from enum import Enum


class Phase(Enum):
    """Conversation phases. Exactly one is current at any instant."""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


class ConnectionStatus(Enum):
    """Recognition connection status shown to the presentation layer."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


# Phase display strings
PHASE_DISPLAY = {
    Phase.IDLE: "🔇 Idle",
    Phase.LISTENING: "🎤 Listening",
    Phase.PROCESSING: "🧠 Processing",
    Phase.SPEAKING: "🔊 Speaking",
}


@dataclass
class OrchestratorConfig:
    """Configuration for the turn orchestrator."""

    # =========================================================================
    # Turn Timing
    # =========================================================================
    restart_delay_sec: float = 0.5        # Gap between turn end and reconnecting the mic

    # =========================================================================
    # Recognition Recovery
    # =========================================================================
    max_reconnect_attempts: int = 3       # Automatic retries after a connection error
    reconnect_delay_sec: float = 2.0

    # =========================================================================
    # End-of-Turn Detection
    # =========================================================================
    use_silence_detector: bool = True     # Finalize the utterance on sustained silence
    silence_threshold: float = 0.08
    silence_duration_sec: float = 3.5
    silence_poll_interval_sec: float = 0.15

    # =========================================================================
    # Sampling Loop
    # =========================================================================
    tick_hz: float = 30.0                 # Analyzer/feedback/render cadence

    # =========================================================================
    # Messages
    # =========================================================================
    error_reply_prefix: str = "Sorry, I ran into an issue: "
    audio_failed_suffix: str = " (audio failed)"
    interim_marker: str = " …"

    @property
    def tick_interval_sec(self) -> float:
        """Seconds between sampling ticks."""
        return 1.0 / self.tick_hz
