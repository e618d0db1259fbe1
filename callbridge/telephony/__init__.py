"""
Telephony module: following a call on a web dialer page.

Key components:
- page: The Playwright-compatible page protocol the package depends on.
- signals: DomSignalSampler and the classifiers that map a page snapshot to
  a call state.
- state_machine: CallStateMachine, the pure lifecycle with terminal guards.
- detector: CallStateDetector, settle check, polling, watchdogs and hang-up.

Usage examples:
```python
from callbridge.telephony import CallStateDetector, status_text_classifier

detector = CallStateDetector(page, call_id="c-1", classifier=status_text_classifier)
detector.on_state_change(lambda t: print(t.to_state))
await detector.start()
```
"""

from callbridge.telephony.detector import CallStateDetector
from callbridge.telephony.signals import (
    DomSignalSampler,
    single_signal_classifier,
    status_text_classifier,
)
from callbridge.telephony.state_machine import CallStateMachine, InvalidTransitionError
