"""
Call lifecycle data model.

CallState is the single source of truth for where an outbound call attempt is.
Transitions are recorded as immutable StateTransition values so the history of a
call can be inspected after the fact.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CallState(str, Enum):
    """Lifecycle states of one outbound call attempt."""
    IDLE = "idle"
    DIALING = "dialing"
    RINGING = "ringing"
    CONNECTED = "connected"
    VOICEMAIL = "voicemail"
    ENDED = "ended"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallState.ENDED, CallState.FAILED)


class StateTransition(BaseModel):
    """One emitted state change. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(default_factory=time.time)
    from_state: CallState
    to_state: CallState
    reason: str = ""


@dataclass(frozen=True)
class CallSignals:
    """
    Snapshot of the telephony page as seen by a signal sampler.

    Only ``hangup_visible`` is required; richer samplers may also report status
    text, a running call timer and explicit ringing/voicemail/error markers.
    """
    hangup_visible: bool
    ringing: bool = False
    voicemail: bool = False
    error: Optional[str] = None
    status_text: str = ""
    call_timer: Optional[str] = None
