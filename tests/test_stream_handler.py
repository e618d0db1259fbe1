"""
Tests for the per-call audio stream handler.

The session, relay and output device are replaced with in-memory fakes so the
gates, interruption handling and shutdown ordering can be checked directly.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from callbridge.audio.capture_script import CAPTURE_SCRIPT, TEARDOWN_SCRIPT
from callbridge.audio.transcoder import AudioTranscoder
from callbridge.bot.conversational_client import SessionHandshakeError
from callbridge.bot.stream_handler import AudioStreamHandler
from callbridge.models.conversation import AudioChunk, Speaker

FRAME = b"\x01\x00" * 320  # 640 bytes, 20ms at 16kHz


@pytest.fixture
def build_handler(mock_page, stub_session, stream_config, relay_factory, make_player):
    def _build(player=None, session=None, **kwargs):
        return AudioStreamHandler(
            mock_page,
            session or stub_session,
            "call-1",
            config=stream_config,
            transcoder=AudioTranscoder(output_dir=stream_config.recordings_dir),
            player=player or make_player(),
            relay_factory=relay_factory,
            **kwargs,
        )
    return _build


@pytest.mark.asyncio
async def test_start_capture_connects_then_injects(build_handler, stub_session, mock_page, relay_factory):
    handler = build_handler()
    await handler.start_capture()

    stub_session.connect.assert_awaited_once()
    relay = relay_factory.created[0]
    assert relay.started
    script, args = mock_page.evaluate.call_args.args
    assert script == CAPTURE_SCRIPT
    assert args["relayUrl"] == relay.url
    assert args["sampleRate"] == 16000
    assert handler.accepting

    await handler.cleanup()


@pytest.mark.asyncio
async def test_handshake_failure_never_accepts(build_handler, stub_session, relay_factory):
    stub_session.connect.side_effect = SessionHandshakeError("no route")
    handler = build_handler()

    with pytest.raises(SessionHandshakeError):
        await handler.start_capture()

    assert not handler.accepting
    handler.on_capture_frame(FRAME)
    assert handler.capture_queue.empty()
    assert handler.recording_segments == []
    assert relay_factory.created == []


@pytest.mark.asyncio
async def test_small_frames_are_never_forwarded(build_handler, stub_session):
    handler = build_handler()

    assert await handler.forward_chunk(AudioChunk(buffer=b"\x00" * 100)) is False
    assert await handler.forward_chunk(AudioChunk(buffer=b"\x00" * 319)) is False
    assert await handler.forward_chunk(AudioChunk(buffer=b"\x00" * 320)) is True

    assert handler.dropped_small == 2
    assert stub_session.sent == [b"\x00" * 320]


@pytest.mark.asyncio
async def test_playback_gate_drops_echo_window(build_handler, stub_session):
    handler = build_handler()
    finished = time.monotonic()
    handler.last_playback_finished = finished

    inside = AudioChunk(buffer=FRAME, timestamp=finished + 0.1)
    after = AudioChunk(buffer=FRAME, timestamp=finished + 0.25)

    assert await handler.forward_chunk(inside) is False
    assert await handler.forward_chunk(after) is True
    assert handler.dropped_gated == 1
    assert stub_session.sent == [FRAME]


@pytest.mark.asyncio
async def test_gate_open_before_any_playback(build_handler):
    handler = build_handler()
    assert handler.last_playback_finished is None
    assert not handler.in_playback_gate(time.monotonic())


@pytest.mark.asyncio
async def test_frames_forwarded_in_arrival_order(build_handler, stub_session, wait_for_condition):
    handler = build_handler()
    await handler.start_capture()

    frames = [bytes([i]) * 640 for i in range(5)]
    for frame in frames:
        handler.on_capture_frame(frame)

    await wait_for_condition(lambda: len(stub_session.sent) == 5)
    assert stub_session.sent == frames
    assert handler.recording_segments == frames
    await handler.cleanup()


@pytest.mark.asyncio
async def test_capture_stops_after_ten_consecutive_errors(build_handler, make_session, wait_for_condition):
    session = make_session(fail_with=RuntimeError("socket closed"))
    handler = build_handler(session=session)
    await handler.start_capture()

    for _ in range(11):
        handler.on_capture_frame(FRAME)

    await wait_for_condition(lambda: session.disconnect_calls == 1)
    await asyncio.sleep(0.05)

    assert session.attempts == 10
    assert session.sent == []
    assert not handler.accepting
    assert handler.cleaning_up


@pytest.mark.asyncio
async def test_error_count_resets_on_success(build_handler, stub_session):
    handler = build_handler()
    stub_session.fail_with = RuntimeError("blip")
    for _ in range(9):
        await handler.forward_chunk(AudioChunk(buffer=FRAME))
    assert handler.consecutive_errors == 9

    stub_session.fail_with = None
    assert await handler.forward_chunk(AudioChunk(buffer=FRAME)) is True
    assert handler.consecutive_errors == 0


@pytest.mark.asyncio
async def test_agent_audio_played_in_order(build_handler, make_player, wait_for_condition):
    player = make_player()
    handler = build_handler(player=player)
    await handler.start_capture()

    chunks = [bytes([i]) * 64 for i in range(1, 4)]
    for chunk in chunks:
        handler.enqueue_agent_audio(chunk, "pcm_16000")

    await wait_for_condition(lambda: len(player.played) == 3)
    assert player.played == chunks
    await wait_for_condition(lambda: not handler.is_playing)
    assert handler.last_playback_finished is not None
    await handler.cleanup()


@pytest.mark.asyncio
async def test_interruption_clears_queue_and_stops_device(build_handler, make_player, wait_for_condition):
    player = make_player(blocked=True)
    handler = build_handler(player=player)
    await handler.start_capture()

    old = [b"\x01" * 64, b"\x02" * 64, b"\x03" * 64]
    for chunk in old:
        handler.enqueue_agent_audio(chunk, "pcm_16000")
    await wait_for_condition(lambda: len(player.started) == 1)
    assert handler.playback_queue.qsize() == 2

    await handler.handle_interruption()

    assert handler.playback_queue.empty()
    assert player.stop_calls == 1

    fresh = b"\x09" * 64
    handler.enqueue_agent_audio(fresh, "pcm_16000")
    player.release()
    await wait_for_condition(lambda: player.played == [fresh])
    await asyncio.sleep(0.05)
    assert player.played == [fresh]
    await handler.cleanup()


@pytest.mark.asyncio
async def test_interruption_event_from_session(build_handler, stub_session, make_player, wait_for_condition):
    player = make_player(blocked=True)
    handler = build_handler(player=player)
    await handler.start_capture()
    handler.enqueue_agent_audio(b"\x01" * 64)
    handler.enqueue_agent_audio(b"\x02" * 64)
    await wait_for_condition(lambda: len(player.started) == 1)

    stub_session.emit("interruption", {})

    await wait_for_condition(lambda: player.stop_calls == 1)
    assert handler.playback_queue.empty()
    await handler.cleanup()
    assert player.played == []


@pytest.mark.asyncio
async def test_transcript_from_session_events(build_handler, stub_session, wait_for_condition):
    handler = build_handler()
    await handler.start_capture()

    stub_session.emit("user_transcript", {"text": "partial", "is_final": False})
    stub_session.emit("user_transcript", {"text": "Hello?", "is_final": True})
    stub_session.emit("agent_response", {"text": "Hi, this is Sam."})

    await wait_for_condition(lambda: len(handler.transcript) == 2)
    turns = handler.get_transcript()
    assert [(t.speaker, t.message) for t in turns] == [
        (Speaker.CONTACT, "Hello?"),
        (Speaker.AGENT, "Hi, this is Sam."),
    ]
    await handler.cleanup()


@pytest.mark.asyncio
async def test_hangup_requested_after_closing_remark(build_handler, stub_session, wait_for_condition):
    on_hangup = AsyncMock()
    handler = build_handler(on_hangup_requested=on_hangup)
    await handler.start_capture()

    handler.enqueue_agent_audio(b"\x01" * 64)
    stub_session.emit("conversation_ending", {"text": "Goodbye!"})

    await wait_for_condition(lambda: on_hangup.await_count == 1)
    assert handler.hangup_requested
    await handler.cleanup()
    on_hangup.assert_awaited_once()


@pytest.mark.asyncio
async def test_session_failure_stops_capture(build_handler, stub_session, wait_for_condition):
    handler = build_handler()
    await handler.start_capture()

    stub_session.emit("session_failed", {"error": ConnectionError("gone")})

    await wait_for_condition(lambda: handler.cleaning_up)
    await wait_for_condition(lambda: stub_session.disconnect_calls == 1)
    assert isinstance(handler.session_error, ConnectionError)
    assert not handler.accepting


@pytest.mark.asyncio
async def test_stop_capture_twice_has_no_duplicate_effects(build_handler, stub_session, mock_page, relay_factory, make_player):
    player = make_player()
    handler = build_handler(player=player)
    await handler.start_capture()

    await handler.stop_capture()
    await handler.stop_capture()

    relay = relay_factory.created[0]
    assert stub_session.disconnect_calls == 1
    assert relay.close_calls == 1
    assert player.closed
    teardown_calls = [c for c in mock_page.evaluate.call_args_list if c.args[0] == TEARDOWN_SCRIPT]
    assert len(teardown_calls) == 1


@pytest.mark.asyncio
async def test_concurrent_stop_capture(build_handler, stub_session):
    handler = build_handler()
    await handler.start_capture()

    await asyncio.gather(handler.stop_capture(), handler.stop_capture(), handler.cleanup())

    assert stub_session.disconnect_calls == 1


@pytest.mark.asyncio
async def test_stop_capture_before_start(build_handler, stub_session):
    handler = build_handler()
    await handler.stop_capture()
    assert handler.cleaning_up
    assert stub_session.disconnect_calls == 1


@pytest.mark.asyncio
async def test_cleanup_writes_recording_once(build_handler, stream_config, wait_for_condition, stub_session):
    handler = build_handler()
    await handler.start_capture()
    handler.on_capture_frame(FRAME)
    handler.on_capture_frame(FRAME)
    await wait_for_condition(lambda: len(stub_session.sent) == 2)

    path = await handler.cleanup()

    assert path == stream_config.recordings_dir / "call-1.wav"
    assert path.exists()
    assert await handler.cleanup() == path
    handler.on_capture_frame(FRAME)
    assert len(handler.recording_segments) == 2


@pytest.mark.asyncio
async def test_cleanup_without_audio_returns_none(build_handler):
    handler = build_handler()
    assert await handler.cleanup() is None


@pytest.mark.asyncio
async def test_closing_audio_after_ending_flag_plays_before_hangup(build_handler, stub_session, make_player, wait_for_condition):
    player = make_player(blocked=True)
    seen = []

    async def on_hangup():
        seen.append((handler.is_playing, handler.playback_queue.qsize(), list(player.played)))

    handler = build_handler(player=player, on_hangup_requested=on_hangup)
    await handler.start_capture()

    stub_session.emit("conversation_ending", {"text": "Goodbye!"})
    await wait_for_condition(lambda: handler.conversation_ending)
    farewell = [b"\x01" * 64, b"\x02" * 64]
    for chunk in farewell:
        handler.enqueue_agent_audio(chunk, "pcm_16000")

    await asyncio.sleep(0.2)
    assert seen == []

    player.release()
    await wait_for_condition(lambda: len(seen) == 1)
    assert seen == [(False, 0, farewell)]
    await handler.cleanup()


@pytest.mark.asyncio
async def test_overlapping_internal_stops_release_everything(build_handler, make_session, make_player, relay_factory, wait_for_condition):
    session = make_session(fail_with=RuntimeError("socket closed"), disconnect_delay=0.1)
    player = make_player()
    handler = build_handler(session=session, player=player)
    await handler.start_capture()

    for _ in range(10):
        handler.on_capture_frame(FRAME)
    await wait_for_condition(lambda: session.disconnect_calls == 1)
    session.emit("session_failed", {"error": ConnectionError("gone")})

    await handler.cleanup()

    assert session.disconnect_calls == 1
    assert relay_factory.created[0].close_calls == 1
    assert player.closed


@pytest.mark.asyncio
async def test_cancelled_stop_caller_does_not_abort_release(build_handler, make_session, make_player, relay_factory):
    session = make_session(disconnect_delay=0.1)
    player = make_player()
    handler = build_handler(session=session, player=player)
    await handler.start_capture()

    first = asyncio.create_task(handler.stop_capture())
    await asyncio.sleep(0.02)
    first.cancel()
    await asyncio.gather(first, return_exceptions=True)

    await handler.cleanup()

    assert relay_factory.created[0].close_calls == 1
    assert player.closed


@pytest.mark.asyncio
async def test_session_failure_reports_capture_failure(build_handler, stub_session, wait_for_condition):
    on_failed = AsyncMock()
    handler = build_handler(on_capture_failed=on_failed)
    await handler.start_capture()

    stub_session.emit("session_failed", {"error": ConnectionError("gone")})

    await wait_for_condition(lambda: on_failed.await_count == 1)
    reason = on_failed.await_args.args[0]
    assert reason.startswith("conversational session failed")
    assert stub_session.disconnect_calls == 1


@pytest.mark.asyncio
async def test_forwarding_error_bound_reports_capture_failure(build_handler, make_session, wait_for_condition):
    session = make_session(fail_with=RuntimeError("socket closed"))
    on_failed = AsyncMock()
    handler = build_handler(session=session, on_capture_failed=on_failed)
    await handler.start_capture()

    for _ in range(10):
        handler.on_capture_frame(FRAME)

    await wait_for_condition(lambda: on_failed.await_count == 1)
    assert "forwarding errors" in on_failed.await_args.args[0]


@pytest.mark.asyncio
async def test_conversation_metadata_events_recorded(build_handler, stub_session, wait_for_condition):
    handler = build_handler()
    await handler.start_capture()

    stub_session.emit("conversation_started", {"conversation_id": "conv-9", "agent_output_audio_format": "pcm_16000"})
    stub_session.emit("audio_end", {"audio_end_ms": 1250})

    await wait_for_condition(lambda: handler.agent_audio_end_ms == 1250)
    assert handler.conversation_id == "conv-9"
    await handler.cleanup()
