"""
Orchestrator Events
===================

Everything that can change the orchestrator's state arrives as one of
these events on a single ordered queue. Each event carries the epoch of
the session that produced it; the consumer drops events whose epoch is
not the current one, so results from a torn-down session never apply.
Recognizer events also carry the connection they came from, and are
dropped once that connection has been closed.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class Event:
    epoch: int


@dataclass
class TranscriptReceived(Event):
    connection: int     # recognizer connection that produced it
    text: str
    is_final: bool


@dataclass
class RecognitionFailed(Event):
    connection: int
    error: Exception


@dataclass
class SilenceDetected(Event):
    pass


@dataclass
class FinalizeDone(Event):
    """The recognizer finished handling an end-of-turn hint."""


@dataclass
class ReplyReady(Event):
    turn_id: int
    text: str


@dataclass
class ReplyFailed(Event):
    turn_id: int
    error: Exception


@dataclass
class SpeechFinished(Event):
    turn_id: int
    error: Optional[Exception] = None   # SynthesisExhaustedError when nothing was played


@dataclass
class RestartDue(Event):
    pass


@dataclass
class ReconnectDue(Event):
    attempt: int


@dataclass
class RestartRequested(Event):
    """Manual restart from the presentation layer."""
