"""
Shared fakes for the AuraVoice tests.

Every port has an in-memory stand-in so the orchestrator can be driven
without a microphone, a model or the network.
"""

import asyncio
from typing import Callable, List, Optional

import numpy as np
import pytest

from auravoice.core.stt import SpeechRecognizer, Transcript


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


class FakeStream:
    """Stands in for MicrophoneStream: only the listener API is used."""

    def __init__(self):
        self.listeners = []

    def add_listener(self, listener):
        self.listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)


class FakeRecognizer(SpeechRecognizer):
    """Scriptable recognizer. Tests push transcripts with emit()."""

    name = "fake"

    def __init__(self, connect_errors: Optional[List[Exception]] = None):
        self.connect_errors = list(connect_errors or [])
        self.connects = 0
        self.disconnects = 0
        self.finalizes = 0
        self.final_on_finalize: Optional[str] = None
        self.callbacks = []     # (on_transcript, on_error) per successful connect
        self._stream: Optional[FakeStream] = None

    async def connect(self, on_transcript, on_error) -> None:
        self.connects += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.callbacks.append((on_transcript, on_error))
        self._stream = FakeStream()

    async def disconnect(self) -> None:
        self.disconnects += 1
        self._stream = None

    def get_media_stream(self):
        return self._stream

    async def finalize(self) -> None:
        self.finalizes += 1
        if self.final_on_finalize:
            self.emit(self.final_on_finalize, is_final=True)

    def emit(self, text: str, is_final: bool = False, connection: int = -1) -> None:
        on_transcript, _ = self.callbacks[connection]
        if is_final:
            # Non-continuous recognition stops after the final result
            self._stream = None
        on_transcript(Transcript(text=text, is_final=is_final))

    def fail(self, error: Exception, connection: int = -1) -> None:
        _, on_error = self.callbacks[connection]
        on_error(error)


class FakeGenerator:
    """ReplyGenerator stand-in with an optional gate to hold a turn in Processing."""

    def __init__(self, reply: str = "I hear you.", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.prompts: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    async def generate(self, user_text: str) -> str:
        self.prompts.append(user_text)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply

    async def aclose(self) -> None:
        self.closed = True


class FakeSynthesizer:
    """SpeechSynthesizer stand-in; speak() can be held open with a gate."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.spoken: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.stopped = 0
        self.closed = False

    async def speak(self, text: str, voice=None) -> None:
        self.spoken.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

    def stop(self) -> None:
        self.stopped += 1

    async def aclose(self) -> None:
        self.closed = True


class FakeAnalyzer:
    """Intensity source controlled by the test."""

    def __init__(self, level: float = 0.0):
        self.level = level
        self.resets = 0

    def push(self, samples: np.ndarray) -> None:
        pass

    def reset(self) -> None:
        self.resets += 1

    def intensity(self) -> float:
        return self.level


class FakeOutput:
    """AudioOutput stand-in that records what would have been played."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.played = []
        self.stopped = 0
        self.closed = False

    async def play(self, audio, sample_rate: int) -> None:
        if self.error is not None:
            raise self.error
        self.played.append((audio, sample_rate))

    def stop(self) -> None:
        self.stopped += 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()
