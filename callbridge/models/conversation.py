"""
Per-call audio and transcript data structures.

AudioChunk and PlaybackQueueItem travel through the stream handler's queues and
are consumed exactly once. ConversationTurn values accumulate in a Transcript
owned by a single stream handler.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Speaker(str, Enum):
    """Who produced a conversation turn."""
    AGENT = "agent"
    CONTACT = "contact"


class ConversationTurn(BaseModel):
    """A single utterance in the call transcript."""

    speaker: Speaker
    message: str
    timestamp: float = Field(default_factory=time.time)
    audio_chunk_id: Optional[str] = None


@dataclass(frozen=True)
class AudioChunk:
    """A captured caller audio frame, timestamped on arrival."""
    buffer: bytes
    timestamp: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class PlaybackQueueItem:
    """Agent audio waiting for the outbound device."""
    buffer: bytes
    timestamp: float = field(default_factory=time.monotonic)
    generation: int = 0


class Transcript:
    """
    Append-only, insertion-ordered list of conversation turns for one call.
    """

    def __init__(self):
        self._turns: List[ConversationTurn] = []

    def append(self, speaker: Speaker, message: str, audio_chunk_id: Optional[str] = None) -> ConversationTurn:
        turn = ConversationTurn(speaker=speaker, message=message, audio_chunk_id=audio_chunk_id)
        self._turns.append(turn)
        return turn

    @property
    def turns(self) -> List[ConversationTurn]:
        """Return a copy so callers cannot reorder the history."""
        return list(self._turns)

    def __len__(self) -> int:
        return len(self._turns)
