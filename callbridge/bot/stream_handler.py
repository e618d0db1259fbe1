"""
Audio stream handler: the per-call orchestrator between the page and the agent.

Captured caller frames arrive from the capture relay, are appended to the call
recording and forwarded in arrival order to the conversational session. Agent
audio comes back as session events and is played one chunk at a time on the
single outbound device. A short playback gate drops captured frames right after
agent speech so the agent does not hear (and interrupt) itself.
"""

import asyncio
import inspect
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from callbridge.audio.capture_script import CAPTURE_SCRIPT, TEARDOWN_SCRIPT
from callbridge.audio.playback import AudioPlayer, NullPlayer, PyAudioPlayer, RelayPlayer
from callbridge.audio.relay import CaptureRelay
from callbridge.audio.transcoder import (
    AudioTranscoder,
    estimate_duration,
    parse_output_format,
    ulaw_to_pcm16,
)
from callbridge.bot.conversational_client import ConversationalClient
from callbridge.config.constants import LOGGER_NAME
from callbridge.config.settings import StreamConfig
from callbridge.models.conversation import (
    AudioChunk,
    ConversationTurn,
    PlaybackQueueItem,
    Speaker,
    Transcript,
)
from callbridge.telephony.page import Page
from callbridge.timers import TimerGroup

logger = logging.getLogger(LOGGER_NAME)

HangupAction = Callable[[], Union[None, Awaitable[None]]]
FailureAction = Callable[[str], Union[None, Awaitable[None]]]


def _drain(queue: asyncio.Queue) -> int:
    dropped = 0
    while True:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            return dropped
        dropped += 1


class AudioStreamHandler:
    """
    Bridges one call's audio to and from the conversational session.

    The instance is scoped to a single call attempt: ``start_capture`` once,
    then ``stop_capture``/``cleanup`` (both idempotent) when the call ends.
    """

    def __init__(
        self,
        page: Optional[Page],
        session: ConversationalClient,
        call_id: str,
        config: Optional[StreamConfig] = None,
        transcoder: Optional[AudioTranscoder] = None,
        player: Optional[AudioPlayer] = None,
        on_hangup_requested: Optional[HangupAction] = None,
        on_capture_failed: Optional[FailureAction] = None,
        relay_factory: Callable[..., CaptureRelay] = CaptureRelay,
    ):
        self.page = page
        self.session = session
        self.call_id = call_id
        self.config = config or StreamConfig()
        self.transcoder = transcoder or AudioTranscoder(
            output_dir=self.config.recordings_dir, sample_rate=self.config.sample_rate
        )
        self.player = player
        self.on_hangup_requested = on_hangup_requested
        self.on_capture_failed = on_capture_failed
        self.relay_factory = relay_factory
        self.relay: Optional[CaptureRelay] = None

        self.capture_queue: asyncio.Queue = asyncio.Queue()
        self.playback_queue: asyncio.Queue = asyncio.Queue()
        self.recording_segments: List[bytes] = []
        self.transcript = Transcript()

        self.accepting = False
        self.cleaning_up = False
        self.is_playing = False
        self.playback_rate = self.config.sample_rate
        self.last_playback_finished: Optional[float] = None
        self.conversation_ending = False
        self.hangup_requested = False
        self.session_error: Optional[Exception] = None
        self.conversation_id: Optional[str] = None
        self.agent_audio_end_ms: Optional[int] = None
        self.recording_path: Optional[Path] = None

        self.consecutive_errors = 0
        self.forwarded_chunks = 0
        self.dropped_small = 0
        self.dropped_gated = 0
        self.played_chunks = 0

        self._playback_generation = 0
        self._current_play: Optional[asyncio.Task] = None
        self._forwarding_stopped = False
        self._stopped = False
        self._finalized = False
        self._stop_task: Optional[asyncio.Task] = None
        self._failure_task: Optional[asyncio.Task] = None
        self._stop_waiters: Set[asyncio.Task] = set()
        self._cleanup_lock = asyncio.Lock()
        self._timers = TimerGroup(f"stream:{call_id}")

        self._event_handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "conversation_started": self._on_conversation_started,
            "audio_chunk": self._on_agent_audio,
            "audio_end": self._on_audio_end,
            "user_transcript": self._on_user_transcript,
            "agent_response": self._on_agent_response,
            "interruption": self._on_interruption,
            "conversation_ending": self._on_conversation_ending,
            "session_failed": self._on_session_failed,
            "mode_change": self._on_mode_change,
            "reconnected": self._on_reconnected,
        }

    async def start_capture(self) -> None:
        """
        Connect the session, start the relay and inject the page capture graph.

        Raises:
            SessionHandshakeError: If the conversational session cannot be opened
        """
        if self.accepting or self._stopped:
            logger.warning(f"[{self.call_id}] start_capture ignored (accepting={self.accepting}, stopped={self._stopped})")
            return

        logger.info(f"[{self.call_id}] Starting audio capture")
        await self.session.connect()

        try:
            self.relay = self.relay_factory(on_frame=self.on_capture_frame, host=self.config.relay_host)
            await self.relay.start()
            if self.player is None:
                self.player = self._default_player()

            self._timers.spawn("events", self._consume_session_events())
            self._timers.spawn("forward", self._forward_loop())
            self._timers.spawn("playback", self._playback_loop())

            self.accepting = True
            if self.page is not None:
                await self.page.evaluate(
                    CAPTURE_SCRIPT,
                    {
                        "relayUrl": self.relay.url,
                        "sampleRate": self.config.sample_rate,
                        "deviceLabel": self.config.capture_device,
                    },
                )
        except Exception as e:
            logger.error(f"[{self.call_id}] Failed to start audio capture: {e}", exc_info=True)
            await self.stop_capture()
            raise

        logger.info(f"[{self.call_id}] Audio capture started")

    def _default_player(self) -> AudioPlayer:
        if self.config.in_page_playback:
            return RelayPlayer(self.relay)
        if self.config.playback_device:
            return PyAudioPlayer(self.config.playback_device)
        logger.warning(f"[{self.call_id}] No playback device configured, agent audio will be discarded")
        return NullPlayer()

    # Capture path

    def on_capture_frame(self, data: bytes) -> None:
        """Accept one raw PCM frame from the relay."""
        if not self.accepting or self.cleaning_up:
            return
        self.recording_segments.append(data)
        self.capture_queue.put_nowait(AudioChunk(buffer=data))
        if self.config.record_placeholders:
            self.transcript.append(Speaker.CONTACT, "[Contact Audio Captured]")

    def in_playback_gate(self, timestamp: float) -> bool:
        """True if a frame captured at ``timestamp`` falls in the post-playback window."""
        if self.last_playback_finished is None:
            return False
        elapsed = timestamp - self.last_playback_finished
        return 0 <= elapsed < self.config.playback_gate

    async def _forward_loop(self) -> None:
        while not self._forwarding_stopped:
            chunk = await self.capture_queue.get()
            if self.cleaning_up or self._forwarding_stopped:
                break
            await self.forward_chunk(chunk)

    async def forward_chunk(self, chunk: AudioChunk) -> bool:
        """
        Apply the size and playback gates and send the chunk to the session.

        Returns:
            bool: True if the chunk was handed to the session
        """
        if len(chunk.buffer) < self.config.min_chunk_bytes:
            self.dropped_small += 1
            return False
        if self.in_playback_gate(chunk.timestamp):
            self.dropped_gated += 1
            return False

        try:
            await self.session.send_audio_chunk(chunk.buffer)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.cleaning_up:
                logger.debug(f"[{self.call_id}] Send interrupted by cleanup: {e}")
                return False
            self.consecutive_errors += 1
            logger.warning(
                f"[{self.call_id}] Error forwarding audio "
                f"({self.consecutive_errors}/{self.config.max_consecutive_errors}): {e}"
            )
            if self.consecutive_errors >= self.config.max_consecutive_errors:
                logger.error(f"[{self.call_id}] Too many consecutive forwarding errors, stopping capture")
                self._stop_after_failure(f"{self.consecutive_errors} consecutive audio forwarding errors")
            return False

        self.consecutive_errors = 0
        self.forwarded_chunks += 1
        return True

    # Session events

    async def _consume_session_events(self) -> None:
        async for event in self.session.events():
            handler = self._event_handlers.get(event.type)
            if handler is None:
                logger.debug(f"[{self.call_id}] Session event: {event.type}")
                continue
            try:
                await handler(event.data)
            except Exception as e:
                logger.error(f"[{self.call_id}] Error handling session event {event.type}: {e}", exc_info=True)

    async def _on_conversation_started(self, data: Dict[str, Any]) -> None:
        self.conversation_id = data.get("conversation_id")
        logger.info(f"[{self.call_id}] Agent conversation {self.conversation_id} started")

    async def _on_agent_audio(self, data: Dict[str, Any]) -> None:
        self.enqueue_agent_audio(data["audio"], data.get("audio_format"), data.get("event_id"))

    def enqueue_agent_audio(self, audio: bytes, audio_format: Optional[str] = None, event_id: Optional[int] = None) -> None:
        """Queue agent speech for playback and add it to the recording."""
        if self.cleaning_up:
            return
        if self.conversation_ending and not self.hangup_requested and self._timers.is_active("hangup-grace"):
            # More of the closing remark arrived; re-armed once playback drains
            self._timers.cancel("hangup-grace")
            logger.debug(f"[{self.call_id}] Hang-up grace timer reset by late agent audio")
        codec, rate = parse_output_format(audio_format)
        pcm = ulaw_to_pcm16(audio) if codec == "ulaw" else audio
        self.playback_rate = rate
        self.recording_segments.append(self.transcoder.to_recording_format(audio, audio_format))
        self.playback_queue.put_nowait(
            PlaybackQueueItem(buffer=pcm, generation=self._playback_generation)
        )
        if self.config.record_placeholders:
            self.transcript.append(
                Speaker.AGENT, "[Agent Audio]", audio_chunk_id=f"chunk_{event_id}" if event_id is not None else None
            )

    async def _on_audio_end(self, data: Dict[str, Any]) -> None:
        self.agent_audio_end_ms = data.get("audio_end_ms")
        logger.debug(f"[{self.call_id}] Agent audio ends at {self.agent_audio_end_ms}ms")

    async def _on_user_transcript(self, data: Dict[str, Any]) -> None:
        if data.get("is_final", True) and data.get("text"):
            self.transcript.append(Speaker.CONTACT, data["text"])

    async def _on_agent_response(self, data: Dict[str, Any]) -> None:
        if data.get("text"):
            self.transcript.append(Speaker.AGENT, data["text"])

    async def _on_interruption(self, data: Dict[str, Any]) -> None:
        await self.handle_interruption()

    async def _on_conversation_ending(self, data: Dict[str, Any]) -> None:
        self.conversation_ending = True
        logger.info(f"[{self.call_id}] Conversation ending, will hang up once playback drains")
        self._maybe_schedule_hangup()

    async def _on_session_failed(self, data: Dict[str, Any]) -> None:
        self.session_error = data.get("error")
        logger.error(f"[{self.call_id}] Conversational session failed: {self.session_error}")
        self._stop_after_failure(f"conversational session failed: {self.session_error}")

    async def _on_mode_change(self, data: Dict[str, Any]) -> None:
        logger.debug(f"[{self.call_id}] Agent is {data.get('mode')}")

    async def _on_reconnected(self, data: Dict[str, Any]) -> None:
        logger.info(f"[{self.call_id}] Session restored after {data.get('attempt')} attempt(s)")

    # Playback path

    async def handle_interruption(self) -> None:
        """Drop all queued agent audio and silence the device immediately."""
        self._playback_generation += 1
        dropped = _drain(self.playback_queue)
        self.is_playing = False
        if self._current_play is not None and not self._current_play.done():
            self._current_play.cancel()
        logger.info(f"[{self.call_id}] Interruption: cleared {dropped} queued playback chunk(s)")
        if self.player is not None:
            await self.player.stop()

    async def _playback_loop(self) -> None:
        while True:
            item = await self.playback_queue.get()
            if self.cleaning_up or item.generation != self._playback_generation:
                continue

            self.is_playing = True
            play = asyncio.create_task(self._play_item(item))
            self._current_play = play
            await asyncio.wait({play})
            self._current_play = None
            if not play.cancelled() and play.exception() is not None:
                logger.warning(f"[{self.call_id}] Playback failed: {play.exception()}")

            self.last_playback_finished = time.monotonic()
            if item.generation == self._playback_generation:
                self.is_playing = False
            self._maybe_schedule_hangup()

    async def _play_item(self, item: PlaybackQueueItem) -> None:
        loop = asyncio.get_running_loop()
        duration = estimate_duration(len(item.buffer), self.playback_rate)
        started = loop.time()
        await self.player.play(item.buffer, self.playback_rate)
        remaining = duration - (loop.time() - started)
        if remaining > 0:
            await asyncio.sleep(remaining)
        self.played_chunks += 1

    def _maybe_schedule_hangup(self) -> None:
        if not self.conversation_ending or self.hangup_requested or self.cleaning_up:
            return
        if self.is_playing or not self.playback_queue.empty():
            return
        if self._timers.is_active("hangup-grace"):
            return
        logger.info(f"[{self.call_id}] Playback drained, hanging up in {self.config.hangup_grace}s")
        self._timers.call_later("hangup-grace", self.config.hangup_grace, self._request_hangup)

    async def _request_hangup(self) -> None:
        if self.hangup_requested or self.cleaning_up:
            return
        self.hangup_requested = True
        logger.info(f"[{self.call_id}] Requesting hang-up after closing remark")
        if self.on_hangup_requested is not None:
            result = self.on_hangup_requested()
            if inspect.isawaitable(result):
                await result

    # Shutdown

    def _stop_after_failure(self, reason: str) -> None:
        """Stop capture from inside the handler, then report why."""
        self._forwarding_stopped = True
        self.accepting = False
        if self._stopped or self._failure_task is not None:
            return
        self._failure_task = asyncio.create_task(self._fail(reason))

    async def _fail(self, reason: str) -> None:
        await self.stop_capture()
        if self.on_capture_failed is None:
            return
        try:
            result = self.on_capture_failed(reason)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"[{self.call_id}] Capture failure callback failed: {e}", exc_info=True)

    async def stop_capture(self) -> None:
        """
        Release every audio resource. Idempotent and safe from any state.

        Concurrent callers share one release, and cancelling a caller does not
        interrupt it.
        """
        if self._stop_task is None:
            self._stopped = True
            self.cleaning_up = True
            self.accepting = False
            self._forwarding_stopped = True
            self._stop_task = asyncio.create_task(self._release())
        caller = asyncio.current_task()
        self._stop_waiters.add(caller)
        try:
            await asyncio.shield(self._stop_task)
        finally:
            self._stop_waiters.discard(caller)

    async def _release(self) -> None:
        logger.info(f"[{self.call_id}] Stopping audio capture")

        try:
            await self.session.disconnect()
        except Exception as e:
            logger.warning(f"[{self.call_id}] Error disconnecting session: {e}")

        self._playback_generation += 1
        dropped_capture = _drain(self.capture_queue)
        dropped_playback = _drain(self.playback_queue)
        if dropped_capture or dropped_playback:
            logger.info(
                f"[{self.call_id}] Discarded {dropped_capture} capture and "
                f"{dropped_playback} playback chunk(s)"
            )

        play = self._current_play
        if play is not None and not play.done():
            play.cancel()
        self.is_playing = False
        if self.player is not None:
            try:
                await self.player.stop()
                if play is not None:
                    await asyncio.gather(play, return_exceptions=True)
                await self.player.close()
            except Exception as e:
                logger.warning(f"[{self.call_id}] Error stopping playback: {e}")

        if self.page is not None:
            try:
                await self.page.evaluate(TEARDOWN_SCRIPT)
            except Exception as e:
                logger.warning(f"[{self.call_id}] Error tearing down page capture: {e}")

        if self.relay is not None:
            try:
                await self.relay.close()
            except Exception as e:
                logger.warning(f"[{self.call_id}] Error closing capture relay: {e}")

        # Timer tasks waiting on this release are left to finish it
        await self._timers.cancel_all(spare=self._stop_waiters)
        logger.info(
            f"[{self.call_id}] Audio capture stopped (forwarded={self.forwarded_chunks}, "
            f"gated={self.dropped_gated}, small={self.dropped_small}, played={self.played_chunks})"
        )

    async def cleanup(self) -> Optional[Path]:
        """
        Stop capture and write the call recording.

        Returns:
            Path of the WAV recording, or None if no audio was captured
        """
        await self.stop_capture()
        async with self._cleanup_lock:
            if self._finalized:
                return self.recording_path
            self._finalized = True
            segments = list(self.recording_segments)
            loop = asyncio.get_running_loop()
            try:
                self.recording_path = await loop.run_in_executor(
                    None, self.transcoder.build_recording, segments, self.call_id
                )
            except Exception as e:
                logger.error(f"[{self.call_id}] Failed to finalize recording: {e}", exc_info=True)
                self.recording_path = None
            logger.info(f"[{self.call_id}] Cleanup completed, recording: {self.recording_path}")
            return self.recording_path

    def get_transcript(self) -> List[ConversationTurn]:
        return self.transcript.turns
