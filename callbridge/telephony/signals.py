"""
Reading the telephony page and turning what is visible into a call state.

A sampler produces a CallSignals snapshot; a classifier maps that snapshot to the
state the page appears to be in, or None when no active call UI is present.
Keeping the two apart lets the detector run against any web dialer whose
markup differs from the defaults.
"""

import logging
from typing import Callable, Optional, Protocol

from callbridge.config.constants import LOGGER_NAME
from callbridge.config.settings import MonitorConfig
from callbridge.models.call_state import CallSignals, CallState
from callbridge.telephony.page import Page

logger = logging.getLogger(LOGGER_NAME)

RINGING_MARKERS = ("ringing", "calling", "connecting")
VOICEMAIL_MARKERS = ("voicemail", "leave a message", "mailbox", "after the tone")

Classifier = Callable[[CallSignals], Optional[CallState]]


class SignalSampler(Protocol):
    async def sample(self) -> CallSignals: ...


SAMPLE_SCRIPT = r"""
({ selectors, labels, surfaceSelectors, timerSelectors }) => {
  const visible = (el) => {
    if (!el) return false;
    const style = window.getComputedStyle(el);
    const rect = el.getBoundingClientRect();
    return style.display !== 'none' && style.visibility !== 'hidden' && rect.width > 0 && rect.height > 0;
  };
  const labelMatches = (text) => {
    const t = (text || '').trim().toLowerCase();
    return labels.some((label) => t === label || (label.length > 3 && t.includes(label)));
  };

  let hangupVisible = selectors.some((sel) => {
    try {
      return Array.from(document.querySelectorAll(sel)).some(visible);
    } catch (e) {
      return false;
    }
  });
  if (!hangupVisible) {
    hangupVisible = Array.from(document.querySelectorAll('button, [role="button"]')).some(
      (el) => visible(el) && (labelMatches(el.getAttribute('aria-label')) || labelMatches(el.innerText))
    );
  }

  let surface = null;
  for (const sel of surfaceSelectors) {
    try {
      surface = document.querySelector(sel);
    } catch (e) {
      surface = null;
    }
    if (surface) break;
  }
  const statusText = ((surface || document.body).innerText || '').slice(0, 2000);

  let callTimer = null;
  for (const sel of timerSelectors) {
    let el = null;
    try {
      el = document.querySelector(sel);
    } catch (e) {
      el = null;
    }
    const text = el ? (el.textContent || '').trim() : '';
    if (text) {
      callTimer = text;
      break;
    }
  }
  const errorEl = document.querySelector('[role="alertdialog"], [role="alert"]');
  const error = errorEl && visible(errorEl) ? (errorEl.innerText || 'call error').trim() : null;

  return {
    hangupVisible,
    statusText,
    callTimer,
    error,
  };
}
"""

CLICK_BY_LABEL_SCRIPT = r"""
(labels) => {
  const matches = (text) => {
    const t = (text || '').trim().toLowerCase();
    return labels.some((label) => t === label || (label.length > 3 && t.includes(label)));
  };
  const candidates = Array.from(document.querySelectorAll('button, [role="button"]'));
  const target = candidates.find(
    (el) => el.offsetParent !== null && (matches(el.getAttribute('aria-label')) || matches(el.innerText))
  );
  if (target) {
    target.click();
    return true;
  }
  return false;
}
"""


class DomSignalSampler:
    """Samples a live page with one ``evaluate`` round trip per poll."""

    def __init__(self, page: Page, config: Optional[MonitorConfig] = None):
        self.page = page
        self.config = config or MonitorConfig()

    async def sample(self) -> CallSignals:
        raw = await self.page.evaluate(
            SAMPLE_SCRIPT,
            {
                "selectors": self.config.hangup_selectors,
                "labels": [label.lower() for label in self.config.hangup_labels],
                "surfaceSelectors": self.config.call_surface_selectors,
                "timerSelectors": self.config.call_timer_selectors,
            },
        )
        status_text = (raw.get("statusText") or "").lower()
        return CallSignals(
            hangup_visible=bool(raw.get("hangupVisible")),
            ringing=any(marker in status_text for marker in RINGING_MARKERS),
            voicemail=any(marker in status_text for marker in VOICEMAIL_MARKERS),
            error=raw.get("error"),
            status_text=status_text,
            call_timer=raw.get("callTimer"),
        )


def single_signal_classifier(signals: CallSignals) -> Optional[CallState]:
    """The hang-up control is the only thing that counts."""
    return CallState.CONNECTED if signals.hangup_visible else None


def status_text_classifier(signals: CallSignals) -> Optional[CallState]:
    """
    Use status text and markers as well as the hang-up control.

    Error dialogs win over everything, then voicemail, then ringing. A running
    call timer means the far end picked up even if the status still says ringing.
    """
    if signals.error:
        return CallState.FAILED
    if signals.voicemail:
        return CallState.VOICEMAIL
    if signals.ringing and not signals.call_timer:
        return CallState.RINGING
    if signals.hangup_visible:
        return CallState.CONNECTED
    return None
