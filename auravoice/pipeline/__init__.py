# AuraVoice - Pipeline Package
from .config import ConnectionStatus, OrchestratorConfig, Phase
from .feedback import FeedbackState, RenderFrame, VisualFeedbackMapper
from .orchestrator import OrchestratorSnapshot, TurnOrchestrator, main
from .turns import TranscriptEntry, TranscriptLog

__all__ = [
    "ConnectionStatus",
    "OrchestratorConfig",
    "Phase",
    "FeedbackState",
    "RenderFrame",
    "VisualFeedbackMapper",
    "OrchestratorSnapshot",
    "TurnOrchestrator",
    "main",
    "TranscriptEntry",
    "TranscriptLog",
]
