"""
Models module for data structures used by callbridge.

Key components:
- call_state: CallState enum, immutable StateTransition records and the
  CallSignals snapshot produced by signal samplers.
- conversation: AudioChunk and PlaybackQueueItem queue entries plus the
  append-only Transcript of ConversationTurn values.
- convai_schemas: Pydantic models for the Conversational AI websocket protocol.
"""

from callbridge.models.call_state import CallSignals, CallState, StateTransition
from callbridge.models.conversation import (
    AudioChunk,
    ConversationTurn,
    PlaybackQueueItem,
    Speaker,
    Transcript,
)
