"""
Transcript Log
==============

Ordered, role-tagged record of the conversation.

The log is append-only with one exception: while the user is speaking,
the trailing interim user entry is replaced in place by each newer
interim, and finally by the final transcript. A finished utterance
therefore always leaves exactly one user entry.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import time

USER = "user"
ASSISTANT = "assistant"


@dataclass
class TranscriptEntry:
    """One line of the transcript."""
    role: str                           # "user" or "assistant"
    text: str
    is_final: bool = True
    started_at: float = field(default_factory=time.time)   # First interim (or final) arrival
    final_at: Optional[float] = None    # User entries: when the final transcript arrived
    reply_at: Optional[float] = None    # Assistant entries: when the reply was ready

    def display(self, interim_marker: str = " …") -> str:
        """Text as shown to the user: interim entries carry a trailing marker."""
        return self.text if self.is_final else f"{self.text}{interim_marker}"


class TranscriptLog:
    """
    Conversation transcript.

    Usage:
        log = TranscriptLog()
        log.add_user("hel", is_final=False)
        log.add_user("hello there", is_final=True)    # replaces the interim
        log.add_assistant("I hear you.")
    """

    def __init__(self):
        self._entries: List[TranscriptEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))

    @property
    def entries(self) -> List[TranscriptEntry]:
        """Copy of the entries in order."""
        return list(self._entries)

    @property
    def last(self) -> Optional[TranscriptEntry]:
        return self._entries[-1] if self._entries else None

    def _pending_interim(self) -> Optional[TranscriptEntry]:
        last = self.last
        if last is not None and last.role == USER and not last.is_final:
            return last
        return None

    def add_user(self, text: str, is_final: bool, now: Optional[float] = None) -> TranscriptEntry:
        """Append a user entry, or replace the pending interim one."""
        now = time.time() if now is None else now
        pending = self._pending_interim()
        entry = TranscriptEntry(
            role=USER,
            text=text,
            is_final=is_final,
            started_at=pending.started_at if pending is not None else now,
            final_at=now if is_final else None,
        )
        if pending is not None:
            self._entries[-1] = entry
        else:
            self._entries.append(entry)
        return entry

    def add_assistant(self, text: str, now: Optional[float] = None) -> TranscriptEntry:
        now = time.time() if now is None else now
        entry = TranscriptEntry(role=ASSISTANT, text=text, started_at=now, reply_at=now)
        self._entries.append(entry)
        return entry

    def annotate_last_assistant(self, suffix: str) -> None:
        """Append a note (e.g. " (audio failed)") to the latest assistant entry."""
        for entry in reversed(self._entries):
            if entry.role == ASSISTANT:
                if not entry.text.endswith(suffix):
                    entry.text += suffix
                return

    def discard_interim(self) -> None:
        """Drop a trailing interim entry whose utterance never finalized."""
        if self._pending_interim() is not None:
            self._entries.pop()
