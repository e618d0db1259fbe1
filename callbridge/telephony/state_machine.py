"""
Pure call lifecycle state machine.

No I/O and no timers: the detector decides *when* to move, this class decides
*whether* the move is legal and keeps the history.
"""

import logging
from typing import Dict, FrozenSet, List, Optional

from callbridge.config.constants import LOGGER_NAME
from callbridge.models.call_state import CallState, StateTransition

logger = logging.getLogger(LOGGER_NAME)

_FORWARD: Dict[CallState, FrozenSet[CallState]] = {
    CallState.IDLE: frozenset({CallState.DIALING}),
    CallState.DIALING: frozenset({CallState.RINGING, CallState.CONNECTED}),
    CallState.RINGING: frozenset({CallState.CONNECTED}),
    CallState.CONNECTED: frozenset({CallState.VOICEMAIL}),
    CallState.VOICEMAIL: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised for a move the call lifecycle does not allow."""


def can_transition(from_state: CallState, to_state: CallState) -> bool:
    if from_state.is_terminal or from_state == to_state:
        return False
    if to_state.is_terminal:
        return True
    return to_state in _FORWARD[from_state]


class CallStateMachine:
    """
    Tracks the current state of one call attempt.

    Once ENDED or FAILED is reached every further transition is ignored and
    ``transition`` returns None.
    """

    def __init__(self, call_id: str = ""):
        self.call_id = call_id
        self._state = CallState.IDLE
        self._history: List[StateTransition] = []

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def transition(self, to_state: CallState, reason: str = "") -> Optional[StateTransition]:
        """
        Move to ``to_state``.

        Returns:
            The recorded transition, or None if the machine is already terminal
            or already in ``to_state``

        Raises:
            InvalidTransitionError: If the move skips or reverses the lifecycle
        """
        if self._state.is_terminal:
            logger.debug(f"[{self.call_id}] Ignoring {to_state.value} after terminal {self._state.value}")
            return None
        if to_state == self._state:
            return None
        if not can_transition(self._state, to_state):
            raise InvalidTransitionError(f"Illegal call transition {self._state.value} -> {to_state.value}")

        transition = StateTransition(from_state=self._state, to_state=to_state, reason=reason)
        self._history.append(transition)
        self._state = to_state
        logger.info(f"[{self.call_id}] Call state {transition.from_state.value} -> {to_state.value} ({reason})")
        return transition
