import asyncio
import json
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from callbridge.config.settings import MonitorConfig, SessionConfig, StreamConfig
from callbridge.models.call_state import CallSignals


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test"""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(level=logging.NOTSET)
    yield


class FakeSessionSocket:
    """Stands in for a websockets client connection."""

    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def push(self, payload):
        self.incoming.put_nowait(json.dumps(payload))

    def drop(self):
        self.incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    def audio_chunks(self):
        return [m["user_audio_chunk"] for m in self.sent if "user_audio_chunk" in m]


class ScriptedSampler:
    """Returns queued CallSignals, repeating the last one once exhausted."""

    def __init__(self, *signals):
        self.signals = list(signals)
        self.calls = 0

    def set(self, signals):
        self.signals = [signals]

    async def sample(self):
        self.calls += 1
        current = self.signals[0]
        if len(self.signals) > 1:
            self.signals.pop(0)
        if isinstance(current, Exception):
            raise current
        return current


def visible(**kwargs):
    return CallSignals(hangup_visible=True, **kwargs)


def gone(**kwargs):
    return CallSignals(hangup_visible=False, **kwargs)


@pytest.fixture
def fake_socket():
    return FakeSessionSocket()


@pytest.fixture
def session_config():
    return SessionConfig(
        api_key="test-api-key",
        agent_id="agent-123",
        connect_timeout=1.0,
        ping_interval=60.0,
        ready_delay=0.01,
        max_reconnect_attempts=2,
        reconnect_delay=0.01,
    )


@pytest.fixture
def fast_monitor_config():
    """Detector timings scaled down for tests."""
    return MonitorConfig(
        settle_interval=0.05,
        poll_interval=0.02,
        dialing_timeout=5.0,
        ringing_timeout=5.0,
        voicemail_timeout=0.05,
        inactivity_timeout=5.0,
        max_call_duration=5.0,
        hangup_settle=0,
    )


@pytest.fixture
def stream_config(tmp_path):
    return StreamConfig(
        min_chunk_bytes=320,
        playback_gate=0.2,
        max_consecutive_errors=10,
        hangup_grace=0.05,
        recordings_dir=tmp_path / "recordings",
    )


@pytest.fixture
def mock_page():
    """A Playwright-like page whose every call succeeds."""
    page = MagicMock()
    page.evaluate = AsyncMock(return_value=False)
    page.query_selector = AsyncMock(return_value=None)
    page.reload = AsyncMock()
    page.screenshot = AsyncMock()
    page.keyboard.press = AsyncMock()
    page.mouse.click = AsyncMock()
    return page


@pytest.fixture
def socket_pair():
    """Two sockets for a connect followed by a reconnect."""
    return FakeSessionSocket(), FakeSessionSocket()


class StubSession:
    """Minimal stand-in for ConversationalClient used by stream handler tests."""

    def __init__(self, fail_with=None, disconnect_delay=0.0):
        self.connect = AsyncMock()
        self.fail_with = fail_with
        self.disconnect_delay = disconnect_delay
        self.sent = []
        self.attempts = 0
        self.disconnect_calls = 0
        self._events = asyncio.Queue()

    async def send_audio_chunk(self, chunk):
        self.attempts += 1
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(chunk)
        return True

    async def disconnect(self):
        self.disconnect_calls += 1
        if self.disconnect_delay:
            await asyncio.sleep(self.disconnect_delay)
        self._events.put_nowait(None)

    def emit(self, event_type, data=None):
        from callbridge.bot.conversational_client import SessionEvent

        self._events.put_nowait(SessionEvent(event_type, data or {}))

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event


class FakeRelay:
    def __init__(self, on_frame, on_control=None, host="127.0.0.1", port=None):
        self.on_frame = on_frame
        self.url = "ws://127.0.0.1:9999/audio"
        self.started = False
        self.close_calls = 0
        self.sent = []
        self.controls = []

    async def start(self):
        self.started = True

    async def send_audio(self, pcm):
        self.sent.append(pcm)
        return True

    async def send_control(self, payload):
        self.controls.append(payload)
        return True

    async def close(self):
        self.close_calls += 1


class GatedPlayer:
    """Player whose ``play`` blocks until ``release()`` is called."""

    def __init__(self, blocked=False):
        self.started = []
        self.played = []
        self.stop_calls = 0
        self.closed = False
        self._gate = asyncio.Event()
        if not blocked:
            self._gate.set()

    def release(self):
        self._gate.set()

    async def play(self, pcm, sample_rate):
        self.started.append(pcm)
        await self._gate.wait()
        self.played.append(pcm)

    async def stop(self):
        self.stop_calls += 1

    async def close(self):
        self.closed = True


async def wait_until(predicate, timeout=1.0, interval=0.01):
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def stub_session():
    return StubSession()


@pytest.fixture
def wait_for_condition():
    return wait_until


@pytest.fixture
def relay_factory():
    """Builds FakeRelay instances and remembers them in ``factory.created``."""
    created = []

    def factory(**kwargs):
        relay = FakeRelay(**kwargs)
        created.append(relay)
        return relay

    factory.created = created
    return factory


@pytest.fixture
def make_player():
    return GatedPlayer


@pytest.fixture
def make_session():
    return StubSession


@pytest.fixture
def make_sampler():
    return ScriptedSampler


@pytest.fixture
def signals():
    """Shorthand constructors: ``signals.visible(...)`` and ``signals.gone(...)``."""
    return SimpleNamespace(visible=visible, gone=gone)
