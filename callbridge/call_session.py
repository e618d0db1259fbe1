"""
One outbound call, end to end.

CallSession wires a CallStateDetector to an AudioStreamHandler: audio starts
when the call connects, and any terminal state tears both down exactly once and
persists the recording and transcript.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, Optional

from callbridge.bot.conversational_client import ConversationalClient, SessionHandshakeError
from callbridge.bot.stream_handler import AudioStreamHandler
from callbridge.config.constants import LOGGER_NAME
from callbridge.config.settings import Settings
from callbridge.models.call_state import CallState, StateTransition
from callbridge.services.storage import Storage
from callbridge.telephony.detector import CallStateDetector
from callbridge.telephony.signals import Classifier, single_signal_classifier

logger = logging.getLogger(LOGGER_NAME)

HandlerFactory = Callable[["CallSession"], AudioStreamHandler]


class CallSession:
    """Owns the detector, the stream handler and the teardown of a single call."""

    def __init__(
        self,
        page,
        call_id: str,
        settings: Settings,
        storage: Optional[Storage] = None,
        dynamic_variables: Optional[Dict[str, str]] = None,
        detector: Optional[CallStateDetector] = None,
        handler_factory: Optional[HandlerFactory] = None,
        classifier: Classifier = single_signal_classifier,
    ):
        self.page = page
        self.call_id = call_id
        self.settings = settings
        self.storage = storage
        self.dynamic_variables = dynamic_variables or {}
        self.detector = detector or CallStateDetector(
            page, call_id=call_id, config=settings.monitor, classifier=classifier
        )
        self.detector.on_state_change(self._on_transition)
        self.handler_factory = handler_factory or CallSession._default_handler
        self.stream_handler: Optional[AudioStreamHandler] = None
        self.recording_path: Optional[Path] = None
        self.final_transition: Optional[StateTransition] = None

        self._connected_at: Optional[float] = None
        self._start_task: Optional[asyncio.Task] = None
        self._teardown_lock = asyncio.Lock()
        self._torn_down = False
        self._done = asyncio.Event()

    def _default_handler(self) -> AudioStreamHandler:
        session = ConversationalClient(
            self.settings.session_config(self.dynamic_variables), call_id=self.call_id
        )
        return AudioStreamHandler(
            self.page,
            session,
            self.call_id,
            config=self.settings.stream,
            on_hangup_requested=self._on_hangup_requested,
            on_capture_failed=self._on_capture_failed,
        )

    async def run(self) -> CallState:
        """Monitor the call until it reaches ENDED or FAILED and return that state."""
        logger.info(f"[{self.call_id}] Call session started")
        try:
            await self.detector.start()
            await self._done.wait()
        finally:
            await self.teardown()
        return self.detector.state

    async def _on_transition(self, transition: StateTransition) -> None:
        if transition.to_state == CallState.CONNECTED and self.stream_handler is None:
            self._connected_at = transition.timestamp
            self._start_task = asyncio.create_task(self._start_stream())
        elif transition.to_state.is_terminal:
            self.final_transition = transition
            await self.teardown()

    async def _start_stream(self) -> None:
        self.stream_handler = self.handler_factory(self)
        try:
            await self.stream_handler.start_capture()
        except SessionHandshakeError as e:
            logger.error(f"[{self.call_id}] Conversational session unavailable: {e}")
            await self.detector.force_abort(f"conversational session unavailable: {e}")
        except Exception as e:
            logger.error(f"[{self.call_id}] Failed to start audio: {e}", exc_info=True)
            await self.detector.force_abort(f"audio start failed: {e}")

    async def _on_hangup_requested(self) -> None:
        logger.info(f"[{self.call_id}] Agent finished, hanging up")
        if not await self.detector.hangup_call():
            await self.detector.force_abort("hang-up after closing remark failed")

    async def _on_capture_failed(self, reason: str) -> None:
        logger.error(f"[{self.call_id}] Audio stream failed mid-call: {reason}")
        await self.detector.force_abort(f"audio stream failed: {reason}")

    async def teardown(self) -> None:
        """Stop monitoring, release audio and persist artifacts. Idempotent."""
        async with self._teardown_lock:
            if self._torn_down:
                return
            self._torn_down = True

            await self.detector.stop()

            if self._start_task is not None and not self._start_task.done():
                if self._start_task is not asyncio.current_task():
                    self._start_task.cancel()
                    await asyncio.gather(self._start_task, return_exceptions=True)

            turns = []
            if self.stream_handler is not None:
                self.recording_path = await self.stream_handler.cleanup()
                turns = self.stream_handler.get_transcript()

            await self._persist(turns)
            logger.info(f"[{self.call_id}] Call session finished in state {self.detector.state.value}")
            self._done.set()

    async def _persist(self, turns) -> None:
        if self.storage is None:
            return
        try:
            if self.recording_path is not None:
                await self.storage.create_call_recording(self.call_id, self.recording_path, self._duration())
            if turns:
                await self.storage.create_conversation_transcript(self.call_id, turns)
        except Exception as e:
            logger.error(f"[{self.call_id}] Failed to persist call artifacts: {e}", exc_info=True)

    def _duration(self) -> Optional[float]:
        if self._connected_at is None or self.final_transition is None:
            return None
        return round(self.final_transition.timestamp - self._connected_at, 2)
