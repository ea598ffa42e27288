"""
AuraVoice - Error Types
=======================

Exception taxonomy shared by the ports and the orchestrator.

- MicrophonePermissionError: mic access denied. Fatal for the session.
- RecognitionConnectionError: recognizer could not open (device or endpoint).
- TransportError: one provider call failed. The chain moves to the next one.
- ProviderExhaustedError: every provider in a chain failed.
"""

from typing import List, Optional


class VoiceAssistantError(Exception):
    """Base class for all AuraVoice errors."""


class MicrophonePermissionError(VoiceAssistantError, PermissionError):
    """Microphone access was denied by the OS or the audio backend."""


class RecognitionConnectionError(VoiceAssistantError, ConnectionError):
    """The speech recognizer could not be connected."""


class TransportError(VoiceAssistantError):
    """
    A single provider call failed.

    Attributes:
        provider: Name of the provider that failed
        status: HTTP-like status code, if the transport had one
        category: Short failure category ("http", "timeout", "empty", ...)
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status: Optional[int] = None,
        category: str = "error",
    ):
        self.provider = provider
        self.status = status
        self.category = category
        detail = f"{provider}: {message}"
        if status is not None:
            detail = f"{provider}: {status} {message}"
        super().__init__(detail)


class ProviderExhaustedError(VoiceAssistantError):
    """Every provider in a fallback chain failed."""

    def __init__(self, kind: str, failures: Optional[List[TransportError]] = None):
        self.kind = kind
        self.failures = list(failures or [])
        names = ", ".join(f.provider for f in self.failures) or "no providers configured"
        super().__init__(f"All {kind} providers failed ({names})")


class SynthesisExhaustedError(ProviderExhaustedError):
    """No synthesis provider produced audible output."""

    def __init__(self, failures: Optional[List[TransportError]] = None):
        super().__init__("synthesis", failures)
