"""
Bot module connecting live calls to a Conversational AI agent.

Key components:
- conversational_client: ConversationalClient, one websocket session per call
  with an audio ready-gate, keep-alive pings, bounded reconnects and an ordered
  event channel consumed with ``async for event in client.events()``.
- stream_handler: AudioStreamHandler, the per-call orchestrator that forwards
  captured audio to the session, plays agent audio, handles interruptions and
  produces the call recording and transcript.
"""

from callbridge.bot.conversational_client import (
    ConversationalClient,
    SessionEvent,
    SessionFailedError,
    SessionHandshakeError,
    SessionState,
)
from callbridge.bot.stream_handler import AudioStreamHandler
