"""
Call state detector: watches the telephony page and decides the call's fate.

The detector samples the page after a settle interval, then polls while the call
is up. Watchdogs force-abort calls that never connect, go quiet, or run past the
hard duration cap. Every way out of a call goes through ``hangup_call`` so the
phone line is actually released before the next number is dialed.
"""

import asyncio
import inspect
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from callbridge.config.constants import LOGGER_NAME
from callbridge.config.settings import MonitorConfig
from callbridge.models.call_state import CallSignals, CallState, StateTransition
from callbridge.telephony.page import Page
from callbridge.telephony.signals import (
    CLICK_BY_LABEL_SCRIPT,
    Classifier,
    DomSignalSampler,
    SignalSampler,
    single_signal_classifier,
)
from callbridge.telephony.state_machine import CallStateMachine
from callbridge.timers import TimerGroup

logger = logging.getLogger(LOGGER_NAME)

StateObserver = Callable[[StateTransition], Union[None, Awaitable[None]]]

SETTLE_FAILURE_REASON = "not connected within settle window"
NO_ANSWER_REASON = "no answer within timeout"


class CallStateDetector:
    """
    Owns the lifecycle of one outbound call attempt.

    Usage:
        detector = CallStateDetector(page, call_id="c-1")
        detector.on_state_change(handle_transition)
        await detector.start()   # returns after the settle check
        ...
        await detector.stop()
    """

    def __init__(
        self,
        page: Page,
        call_id: str = "",
        config: Optional[MonitorConfig] = None,
        sampler: Optional[SignalSampler] = None,
        classifier: Classifier = single_signal_classifier,
    ):
        self.page = page
        self.call_id = call_id
        self.config = config or MonitorConfig()
        self.sampler = sampler or DomSignalSampler(page, self.config)
        self.classifier = classifier
        self.machine = CallStateMachine(call_id)

        self._observers: List[StateObserver] = []
        self._timers = TimerGroup(f"detector:{call_id}")
        self._stop_event = asyncio.Event()
        self._started = False
        self._stopped = False
        self._aborted = False

        self._hangup_task: Optional[asyncio.Task] = None
        self._line_released = False

        self._last_call_timer: Optional[str] = None
        self.last_signal_at: Optional[float] = None
        self.started_at: Optional[float] = None

    @property
    def state(self) -> CallState:
        return self.machine.state

    def get_state(self) -> CallState:
        return self.machine.state

    def get_history(self) -> List[StateTransition]:
        return self.machine.history

    @property
    def line_released(self) -> bool:
        return self._line_released

    def on_state_change(self, callback: StateObserver) -> None:
        """Register an observer called (sync or async) with every transition."""
        self._observers.append(callback)

    # Lifecycle

    async def start(self) -> None:
        """Begin monitoring a just-dialed call and perform the settle check."""
        if self._started or self._stopped:
            logger.warning(f"[{self.call_id}] Detector already started or stopped")
            return
        self._started = True
        self.started_at = time.monotonic()

        await self._emit(CallState.DIALING, "call placed")
        self._timers.call_later("dialing-timeout", self.config.dialing_timeout, self._on_dialing_timeout)
        self._timers.call_later("max-duration", self.config.max_call_duration, self._on_max_duration)
        self._mark_signal()

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.settle_interval)
        except asyncio.TimeoutError:
            pass

        if self._stopped or self.machine.is_terminal:
            logger.info(f"[{self.call_id}] Detector stopped during settle wait")
            return

        signals = await self._sample()
        await self._settle_check(signals)

        if not self.machine.is_terminal and not self._stopped:
            self._timers.every("poll", self.config.poll_interval, self._poll)

    async def stop(self) -> None:
        """Cancel polling and every timer. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        await self._timers.cancel_all()
        logger.info(f"[{self.call_id}] Call monitoring stopped in state {self.state.value}")

    async def force_abort(self, reason: str) -> None:
        """Hang up and fail the call. The only forced way into FAILED."""
        if self._aborted or self.machine.is_terminal:
            return
        self._aborted = True
        logger.warning(f"[{self.call_id}] Force-aborting call: {reason}")
        try:
            await self.hangup_call()
        except Exception as e:
            logger.error(f"[{self.call_id}] Hang-up during abort failed: {e}", exc_info=True)
        await self._emit(CallState.FAILED, reason)
        await self.stop()

    # Sampling and classification

    def _mark_signal(self) -> None:
        self.last_signal_at = time.monotonic()
        if self._stopped or self.machine.is_terminal or not self._started:
            return
        self._timers.call_later("inactivity", self.config.inactivity_timeout, self._on_inactivity)

    async def _sample(self) -> Optional[CallSignals]:
        try:
            signals = await self.sampler.sample()
        except Exception as e:
            logger.warning(f"[{self.call_id}] Signal sampling failed: {e}")
            return None

        if signals.call_timer is None:
            self._mark_signal()
        elif signals.call_timer != self._last_call_timer:
            self._last_call_timer = signals.call_timer
            self._mark_signal()
        return signals

    async def _settle_check(self, signals: Optional[CallSignals]) -> None:
        observed = self.classifier(signals) if signals is not None else None

        if observed == CallState.CONNECTED:
            await self._emit(CallState.CONNECTED, "hang-up control visible")
        elif observed == CallState.RINGING:
            await self._emit(CallState.RINGING, "ringing")
        elif observed == CallState.VOICEMAIL:
            await self._emit(CallState.CONNECTED, "answered")
            await self._emit(CallState.VOICEMAIL, "voicemail detected")
        elif observed == CallState.FAILED:
            await self._emit(CallState.FAILED, signals.error or "call error")
        else:
            await self._emit(CallState.FAILED, SETTLE_FAILURE_REASON)

    async def _poll(self) -> None:
        if self._stopped or self._aborted or self.machine.is_terminal:
            return
        signals = await self._sample()
        if signals is None:
            return

        observed = self.classifier(signals)
        current = self.machine.state

        if observed is None:
            if current == CallState.RINGING:
                await self._emit(CallState.FAILED, "call ended before answer")
            else:
                await self._emit(CallState.ENDED, "hang-up control disappeared")
        elif observed == CallState.FAILED:
            await self._emit(CallState.FAILED, signals.error or "call error")
        elif observed == CallState.CONNECTED and current == CallState.RINGING:
            await self._emit(CallState.CONNECTED, "answered")
        elif observed == CallState.VOICEMAIL and current in (CallState.RINGING, CallState.CONNECTED):
            if current == CallState.RINGING:
                await self._emit(CallState.CONNECTED, "answered")
            await self._emit(CallState.VOICEMAIL, "voicemail detected")

    async def _emit(self, to_state: CallState, reason: str) -> Optional[StateTransition]:
        transition = self.machine.transition(to_state, reason)
        if transition is None:
            return None

        self._mark_signal()
        if to_state == CallState.CONNECTED:
            self._timers.cancel("dialing-timeout")
            self._timers.cancel("ringing-timeout")
        elif to_state == CallState.RINGING:
            self._timers.call_later("ringing-timeout", self.config.ringing_timeout, self._on_ringing_timeout)
        elif to_state == CallState.VOICEMAIL and self.config.hangup_on_voicemail:
            self._timers.call_later("voicemail", self.config.voicemail_timeout, self._on_voicemail_timeout)

        await self._capture_screenshot(transition)
        await self._notify(transition)

        if to_state.is_terminal:
            await self.stop()
        return transition

    async def _notify(self, transition: StateTransition) -> None:
        for callback in list(self._observers):
            try:
                result = callback(transition)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[{self.call_id}] State observer failed: {e}", exc_info=True)

    async def _capture_screenshot(self, transition: StateTransition) -> None:
        if self.config.screenshot_dir is None or self.page is None:
            return
        try:
            directory = Path(self.config.screenshot_dir)
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / f"{self.call_id}_{int(transition.timestamp * 1000)}_{transition.to_state.value}.png"
            await self.page.screenshot(path=str(path))
            logger.debug(f"[{self.call_id}] Screenshot saved: {path}")
        except Exception as e:
            logger.warning(f"[{self.call_id}] Screenshot failed: {e}")

    # Watchdogs

    async def _on_dialing_timeout(self) -> None:
        if self.machine.state == CallState.DIALING:
            await self.force_abort(f"no connection within {self.config.dialing_timeout}s")

    async def _on_ringing_timeout(self) -> None:
        if self.machine.state == CallState.RINGING:
            await self.force_abort(NO_ANSWER_REASON)

    async def _on_inactivity(self) -> None:
        if not self.machine.is_terminal:
            await self.force_abort(f"no call activity for {self.config.inactivity_timeout}s")

    async def _on_max_duration(self) -> None:
        await self.force_abort(f"maximum call duration of {self.config.max_call_duration}s exceeded")

    async def _on_voicemail_timeout(self) -> None:
        if self.machine.state != CallState.VOICEMAIL:
            return
        logger.info(f"[{self.call_id}] Hanging up on voicemail")
        await self.hangup_call()
        await self._emit(CallState.ENDED, "voicemail detected")

    # Hang-up

    async def hangup_call(self) -> bool:
        """
        Release the line, escalating through the hang-up strategies.

        Concurrent callers share one attempt. Once the call UI is verified gone,
        later calls return True without touching the page.

        Returns:
            bool: True if the call UI is gone
        """
        if self._line_released:
            return True
        if self._hangup_task is None or self._hangup_task.done():
            self._hangup_task = asyncio.create_task(self._run_hangup())
        return await asyncio.shield(self._hangup_task)

    def _strategies(self) -> List[Tuple[str, Callable[[], Awaitable[bool]]]]:
        return [
            ("hang-up control", self._click_hangup_control),
            ("escape key", self._press_escape),
            ("outside click", self._click_outside),
            ("page reload", self._reload_page),
        ]

    async def _run_hangup(self) -> bool:
        for name, strategy in self._strategies():
            try:
                attempted = await strategy()
            except Exception as e:
                logger.warning(f"[{self.call_id}] Hang-up via {name} failed: {e}")
                continue
            if not attempted:
                logger.debug(f"[{self.call_id}] Hang-up via {name} not applicable")
                continue

            if self.config.hangup_settle:
                await asyncio.sleep(self.config.hangup_settle)
            if await self._call_ui_gone():
                self._line_released = True
                logger.info(f"[{self.call_id}] Call hung up via {name}")
                return True
            logger.warning(f"[{self.call_id}] Call UI still present after {name}, escalating")

        logger.error(f"[{self.call_id}] All hang-up strategies failed")
        return False

    async def _call_ui_gone(self) -> bool:
        try:
            signals = await self.sampler.sample()
        except Exception as e:
            logger.warning(f"[{self.call_id}] Could not verify hang-up: {e}")
            return False
        return not signals.hangup_visible

    async def _click_hangup_control(self) -> bool:
        for selector in self.config.hangup_selectors:
            try:
                handle = await self.page.query_selector(selector)
            except Exception as e:
                logger.debug(f"[{self.call_id}] Selector {selector} failed: {e}")
                continue
            if handle is not None and await handle.is_visible():
                await handle.click()
                logger.info(f"[{self.call_id}] Clicked hang-up control {selector}")
                return True

        labels = [label.lower() for label in self.config.hangup_labels]
        clicked = await self.page.evaluate(CLICK_BY_LABEL_SCRIPT, labels)
        if clicked:
            logger.info(f"[{self.call_id}] Clicked hang-up control by label")
        return bool(clicked)

    async def _press_escape(self) -> bool:
        await self.page.keyboard.press("Escape")
        return True

    async def _click_outside(self) -> bool:
        x, y = self.config.outside_click_position[:2]
        await self.page.mouse.click(x, y)
        return True

    async def _reload_page(self) -> bool:
        await self.page.reload(timeout=self.config.reload_timeout_ms)
        return True
