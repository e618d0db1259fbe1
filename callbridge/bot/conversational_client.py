"""
Client for one Conversational AI session over a persistent websocket.

The client owns exactly one session per call. It translates raw PCM frames from the
capture relay into ``user_audio_chunk`` messages, surfaces the server's events on an
ordered channel, and recovers from mid-session drops with a bounded reconnect.
Audio is gated behind a small sub-state machine so that the per-call context is
always delivered before the first audio frame.
"""

import asyncio
import base64
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, Optional

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from callbridge.config.constants import (
    CLOSING_PHRASES,
    LOGGER_NAME,
    MESSAGE_TYPE_AGENT_RESPONSE,
    MESSAGE_TYPE_AGENT_RESPONSE_CORRECTION,
    MESSAGE_TYPE_AUDIO,
    MESSAGE_TYPE_ERROR,
    MESSAGE_TYPE_INITIATION_METADATA,
    MESSAGE_TYPE_INTERRUPTION,
    MESSAGE_TYPE_MODE_CHANGE,
    MESSAGE_TYPE_PING,
    MESSAGE_TYPE_PONG,
    MESSAGE_TYPE_USER_TRANSCRIPT,
)
from callbridge.config.settings import SessionConfig
from callbridge.models.convai_schemas import (
    AgentResponseMessage,
    AudioMessage,
    ClientDataMessage,
    InitiationMetadataMessage,
    InterruptionMessage,
    KeepAliveMessage,
    ModeChangeMessage,
    PingMessage,
    PongMessage,
    UserAudioChunkMessage,
    UserTranscriptMessage,
)
from callbridge.timers import TimerGroup

logger = logging.getLogger(LOGGER_NAME)

# WebSocket configuration
WS_MAX_SIZE = 16 * 1024 * 1024  # 16MB - large enough for audio chunks


class SessionState(str, Enum):
    """
    Connection and audio-gate state of the session.

    BUFFERING means the socket is open but the initiation handshake has not
    completed, so outbound audio is held back.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    BUFFERING = "buffering"
    READY = "ready"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


class SessionHandshakeError(ConnectionError):
    """The websocket never opened; no automatic retry is attempted."""


class SessionFailedError(ConnectionError):
    """Reconnection attempts after a mid-session drop were exhausted."""


@dataclass(frozen=True)
class SessionEvent:
    """An event surfaced to the consumer of the session."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)


MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class ConversationalClient:
    """
    One persistent bidirectional session with the conversational agent.

    Events are read with ``async for event in client.events()``; the iterator ends
    after ``disconnect()``.
    """

    def __init__(self, config: SessionConfig, call_id: str = ""):
        self.config = config
        self.call_id = call_id
        self.ws = None
        self.state = SessionState.DISCONNECTED
        self.chunk_counter = 0
        self.reconnect_attempts = 0
        self.conversation_id: Optional[str] = None
        self.agent_output_format: Optional[str] = None
        self.conversation_started = False
        self.conversation_ended = False

        self._buffer: Deque[bytes] = deque(maxlen=config.max_buffered_chunks)
        self._send_lock = asyncio.Lock()
        self._events: asyncio.Queue = asyncio.Queue()
        self._timers = TimerGroup(f"session:{call_id}")
        self._intentional_disconnect = False

        self.handlers: Dict[str, MessageHandler] = {
            MESSAGE_TYPE_INITIATION_METADATA: self._handle_initiation_metadata,
            MESSAGE_TYPE_AUDIO: self._handle_audio,
            MESSAGE_TYPE_USER_TRANSCRIPT: self._handle_user_transcript,
            MESSAGE_TYPE_AGENT_RESPONSE: self._handle_agent_response,
            MESSAGE_TYPE_AGENT_RESPONSE_CORRECTION: self._handle_agent_correction,
            MESSAGE_TYPE_INTERRUPTION: self._handle_interruption,
            MESSAGE_TYPE_MODE_CHANGE: self._handle_mode_change,
            MESSAGE_TYPE_PING: self._handle_ping,
            MESSAGE_TYPE_PONG: self._handle_pong,
            MESSAGE_TYPE_ERROR: self._handle_error,
        }

    @property
    def is_connected(self) -> bool:
        return self.state in (SessionState.BUFFERING, SessionState.READY)

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    @property
    def buffered_chunks(self) -> int:
        return len(self._buffer)

    async def connect(self) -> None:
        """
        Open the session.

        Raises:
            SessionHandshakeError: If the websocket could not be established
        """
        if self.state == SessionState.CLOSED:
            raise SessionHandshakeError("Client already closed")
        if self.is_connected:
            logger.debug(f"[{self.call_id}] Session already connected")
            return

        self._intentional_disconnect = False
        self.state = SessionState.CONNECTING
        logger.info(f"[{self.call_id}] Connecting to conversational agent {self.config.agent_id}")

        try:
            await self._open()
        except Exception as e:
            if self.state != SessionState.CLOSED:
                self.state = SessionState.DISCONNECTED
            logger.error(f"[{self.call_id}] Session handshake failed: {e}")
            raise SessionHandshakeError(f"Failed to establish initial connection: {e}") from e

        await self._publish("connected")

    async def _open(self) -> None:
        url = f"{self.config.url}?agent_id={self.config.agent_id}"
        ws = await asyncio.wait_for(
            websockets.connect(
                url,
                additional_headers={"xi-api-key": self.config.api_key},
                max_size=WS_MAX_SIZE,
                compression=None,
            ),
            timeout=self.config.connect_timeout,
        )
        if self._intentional_disconnect:
            await ws.close()
            raise SessionHandshakeError("Disconnected while connecting")

        self.ws = ws
        self._reset_ready_gate()
        self.state = SessionState.BUFFERING
        self._timers.spawn("recv", self._recv_loop(ws))
        self._timers.every("ping", self.config.ping_interval, self._send_keepalive)
        logger.info(f"[{self.call_id}] Session websocket established")

    def _reset_ready_gate(self) -> None:
        self._timers.cancel("ready")
        if self._buffer:
            logger.info(f"[{self.call_id}] Discarding {len(self._buffer)} buffered audio chunks")
        self._buffer.clear()

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield session events in arrival order until the client is closed."""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def _publish(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.state == SessionState.CLOSED and event_type != "disconnected":
            return
        await self._events.put(SessionEvent(event_type, data or {}))

    async def _recv_loop(self, ws) -> None:
        try:
            async for raw in ws:
                await self._handle_raw(raw)
        except ConnectionClosed as e:
            logger.warning(f"[{self.call_id}] Session connection closed: {e}")
        except Exception as e:
            logger.error(f"[{self.call_id}] Error in session receive loop: {e}", exc_info=True)

        if ws is not self.ws:
            return
        await self._on_connection_lost()

    async def _handle_raw(self, raw) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"[{self.call_id}] Received invalid JSON: {str(raw)[:100]}")
            return
        if not isinstance(data, dict):
            logger.warning(f"[{self.call_id}] Ignoring non-object message: {str(raw)[:100]}")
            return

        message_type = data.get("type")
        handler = self.handlers.get(message_type)
        if handler is None:
            logger.debug(f"[{self.call_id}] Unknown message type: {message_type}")
            return

        try:
            await handler(data)
        except ValidationError as e:
            logger.error(f"[{self.call_id}] Invalid {message_type} message: {e}")
        except ConnectionClosed:
            raise
        except Exception as e:
            logger.error(f"[{self.call_id}] Error handling {message_type}: {e}", exc_info=True)

    async def _handle_initiation_metadata(self, data: Dict[str, Any]) -> None:
        message = InitiationMetadataMessage(**data)
        metadata = message.conversation_initiation_metadata_event
        self.conversation_id = metadata.conversation_id
        self.agent_output_format = metadata.agent_output_audio_format
        logger.info(
            f"[{self.call_id}] Conversation initiated: {self.conversation_id} "
            f"(agent audio: {self.agent_output_format})"
        )
        await self._publish(
            "conversation_started",
            {
                "conversation_id": self.conversation_id,
                "agent_output_audio_format": self.agent_output_format,
            },
        )

        if self.config.dynamic_variables:
            await self._send_json(
                ClientDataMessage(dynamic_variables=self.config.dynamic_variables).model_dump()
            )
            logger.info(f"[{self.call_id}] Sent dynamic variables: {list(self.config.dynamic_variables)}")

        self._timers.call_later("ready", self.config.ready_delay, self._mark_ready)

    async def _mark_ready(self) -> None:
        async with self._send_lock:
            if self.state != SessionState.BUFFERING:
                return
            self.state = SessionState.READY
            queued = list(self._buffer)
            self._buffer.clear()
            logger.info(f"[{self.call_id}] Audio gate lifted, flushing {len(queued)} buffered chunks")
            for chunk in queued:
                await self._send_audio_now(chunk)
        await self._publish("ready")

    async def _handle_audio(self, data: Dict[str, Any]) -> None:
        event = AudioMessage(**data).audio_event
        if event.audio_base_64:
            await self._publish(
                "audio_chunk",
                {
                    "audio": base64.b64decode(event.audio_base_64),
                    "event_id": event.event_id,
                    "audio_format": self.agent_output_format,
                },
            )
        if event.audio_end_ms is not None:
            await self._publish("audio_end", {"audio_end_ms": event.audio_end_ms})

    async def _handle_user_transcript(self, data: Dict[str, Any]) -> None:
        event = UserTranscriptMessage(**data).user_transcription_event
        if event.is_final and event.user_transcript:
            logger.info(f"[{self.call_id}] User said: {event.user_transcript}")
        await self._publish(
            "user_transcript",
            {"text": event.user_transcript, "is_final": event.is_final, "confidence": event.confidence},
        )

    async def _handle_agent_response(self, data: Dict[str, Any]) -> None:
        text = AgentResponseMessage(**data).agent_response_event.agent_response
        if not self.conversation_started:
            self.conversation_started = True
            logger.info(f"[{self.call_id}] First agent response received")

        lowered = text.lower()
        if not self.conversation_ended and any(phrase in lowered for phrase in CLOSING_PHRASES):
            self.conversation_ended = True
            logger.info(f"[{self.call_id}] Conversation ending detected: {text[:100]}")
            await self._publish("conversation_ending", {"text": text})

        await self._publish("agent_response", {"text": text})

    async def _handle_agent_correction(self, data: Dict[str, Any]) -> None:
        logger.debug(f"[{self.call_id}] Agent response correction received")

    async def _handle_interruption(self, data: Dict[str, Any]) -> None:
        logger.info(f"[{self.call_id}] Contact interrupted the agent")
        await self._publish("interruption", {"event": InterruptionMessage(**data).interruption_event})

    async def _handle_mode_change(self, data: Dict[str, Any]) -> None:
        mode = ModeChangeMessage(**data).mode_change_event.mode
        logger.debug(f"[{self.call_id}] Mode change: {mode}")
        await self._publish("mode_change", {"mode": mode})

    async def _handle_ping(self, data: Dict[str, Any]) -> None:
        event_id = PingMessage(**data).ping_event.event_id
        if event_id is not None:
            await self._send_json(PongMessage(event_id=event_id).model_dump())

    async def _handle_pong(self, data: Dict[str, Any]) -> None:
        await self._publish("pong")

    async def _handle_error(self, data: Dict[str, Any]) -> None:
        logger.error(f"[{self.call_id}] Received error from agent: {data}")
        await self._publish("error", {"error": data})

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        if self.ws is None:
            raise ConnectionError("Session websocket is not open")
        await self.ws.send(json.dumps(payload))

    async def _send_audio_now(self, chunk: bytes) -> None:
        message = UserAudioChunkMessage(user_audio_chunk=base64.b64encode(chunk).decode("utf-8"))
        await self._send_json(message.model_dump())
        self.chunk_counter += 1
        if self.chunk_counter == 1:
            logger.info(f"[{self.call_id}] First audio chunk sent: {len(chunk)} bytes")
        elif self.chunk_counter % 100 == 0:
            logger.debug(f"[{self.call_id}] Sent {self.chunk_counter} audio chunks")

    async def send_audio_chunk(self, chunk: bytes) -> bool:
        """
        Forward one raw PCM frame.

        Returns:
            bool: False if the chunk was ignored, True if it was sent or buffered

        Raises:
            Exception: Any transport error from the underlying websocket
        """
        if self.conversation_ended:
            logger.debug(f"[{self.call_id}] Conversation ended, ignoring audio chunk")
            return False
        if self.state in (SessionState.DISCONNECTED, SessionState.FAILED, SessionState.CLOSED):
            logger.debug(f"[{self.call_id}] Cannot send audio - session {self.state.value}")
            return False

        async with self._send_lock:
            if self.state != SessionState.READY:
                if not self._buffer:
                    logger.info(f"[{self.call_id}] Audio gated until conversation context is sent")
                self._buffer.append(chunk)
                return True
            await self._send_audio_now(chunk)
        return True

    async def _send_keepalive(self) -> None:
        if not self.is_connected or self.ws is None:
            return
        try:
            await self._send_json(KeepAliveMessage().model_dump())
        except Exception as e:
            logger.warning(f"[{self.call_id}] Failed to send keep-alive: {e}")

    async def _on_connection_lost(self) -> None:
        self._timers.cancel("ping")
        self._timers.cancel("ready")
        self.ws = None
        if self._intentional_disconnect or self.state == SessionState.CLOSED:
            return

        await self._publish("disconnected", {"intentional": False})
        if self.conversation_ended:
            logger.info(f"[{self.call_id}] Session closed after conversation ended, not reconnecting")
            self.state = SessionState.DISCONNECTED
            return
        self._timers.spawn("reconnect", self._reconnect())

    async def _reconnect(self) -> None:
        self.state = SessionState.RECONNECTING
        self._reset_ready_gate()
        max_attempts = self.config.max_reconnect_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            self.reconnect_attempts = attempt
            logger.info(
                f"[{self.call_id}] Reconnecting (attempt {attempt}/{max_attempts}) "
                f"in {self.config.reconnect_delay} seconds"
            )
            await asyncio.sleep(self.config.reconnect_delay)
            if self._intentional_disconnect:
                return
            try:
                await self._open()
            except Exception as e:
                last_error = e
                logger.warning(f"[{self.call_id}] Reconnection attempt {attempt} failed: {e}")
                continue
            self.reconnect_attempts = 0
            logger.info(f"[{self.call_id}] Reconnection successful")
            await self._publish("reconnected", {"attempt": attempt})
            return

        self.state = SessionState.FAILED
        error = SessionFailedError(f"Max reconnection attempts ({max_attempts}) reached: {last_error}")
        logger.error(f"[{self.call_id}] {error}")
        await self._publish("session_failed", {"error": error})

    async def disconnect(self) -> None:
        """Close the session. Idempotent and safe if never connected."""
        if self.state == SessionState.CLOSED:
            return
        logger.info(f"[{self.call_id}] Disconnecting session (sent {self.chunk_counter} chunks)")
        self._intentional_disconnect = True
        self.state = SessionState.CLOSED

        await self._timers.cancel_all()
        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"[{self.call_id}] Error closing session websocket: {e}")
        self._buffer.clear()

        await self._publish("disconnected", {"intentional": True})
        await self._events.put(None)
