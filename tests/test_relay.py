"""
Tests for the local capture relay websocket.
"""

import asyncio
import json
import socket
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from callbridge.audio.playback import NullPlayer, PyAudioPlayer, RelayPlayer
from callbridge.audio.relay import CaptureRelay, find_free_port


@pytest.fixture
def frames():
    return []


@pytest.fixture
def controls():
    return []


@pytest.fixture
def relay(frames, controls):
    return CaptureRelay(on_frame=frames.append, on_control=controls.append)


def test_binary_frames_reach_handler(relay, frames):
    client = TestClient(relay.app)
    with client.websocket_connect("/audio") as websocket:
        websocket.send_bytes(b"\x01\x00" * 320)
        websocket.send_bytes(b"\x02\x00" * 320)
        websocket.send_text(json.dumps({"type": "capture_started", "sampleRate": 16000}))

    assert frames == [b"\x01\x00" * 320, b"\x02\x00" * 320]
    assert relay.frames_received == 2
    assert not relay.connected


def test_control_messages(relay, controls):
    client = TestClient(relay.app)
    with client.websocket_connect("/audio") as websocket:
        websocket.send_text(json.dumps({"type": "device_selected", "label": "CABLE Output"}))
        websocket.send_text("not json")
        websocket.send_text(json.dumps({"type": "error", "message": "permission denied"}))

    assert relay.device_label == "CABLE Output"
    assert [c["type"] for c in controls] == ["device_selected", "error"]


def test_url_uses_port_and_path():
    relay = CaptureRelay(on_frame=lambda data: None, port=8765)
    assert relay.url == "ws://127.0.0.1:8765/audio"


def test_find_free_port_is_bindable():
    port = find_free_port()
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))


@pytest.mark.asyncio
async def test_send_audio_without_connection(relay):
    assert await relay.send_audio(b"\x00" * 64) is False


@pytest.mark.asyncio
async def test_start_and_close(relay):
    await relay.start()
    assert relay.port is not None
    await relay.close()
    await relay.close()
    assert await relay.send_audio(b"\x00") is False


@pytest.mark.asyncio
async def test_relay_player_forwards_to_relay(relay):
    player = RelayPlayer(relay)
    await player.play(b"\x00" * 64, 16000)
    await player.stop()
    await player.close()


@pytest.mark.asyncio
async def test_null_player_counts():
    player = NullPlayer()
    await player.play(b"\x00" * 64, 16000)
    await player.play(b"\x00" * 64, 16000)
    assert player.played == 2


@pytest.mark.asyncio
async def test_send_control_to_connected_page(relay):
    relay._connection = AsyncMock()
    assert await relay.send_control({"type": "flush_playback"}) is True
    relay._connection.send_text.assert_awaited_once_with(json.dumps({"type": "flush_playback"}))


@pytest.mark.asyncio
async def test_relay_player_stop_flushes_page_playback():
    relay = AsyncMock()
    player = RelayPlayer(relay)

    await player.stop()

    relay.send_control.assert_awaited_once_with({"type": "flush_playback"})


@pytest.mark.asyncio
async def test_pyaudio_player_close_waits_for_pending_write():
    player = PyAudioPlayer("CABLE Input")
    stream = MagicMock()
    player._stream = stream
    player._pending = asyncio.get_running_loop().create_future()

    closing = asyncio.create_task(player.close())
    await asyncio.sleep(0.02)
    stream.close.assert_not_called()

    player._pending.set_result(None)
    await closing
    stream.close.assert_called_once()
    assert player._stream is None
