"""
Tests for PCM/WAV conversion and recording assembly.
"""

import wave

import numpy as np
import pytest

from callbridge.audio.transcoder import (
    AudioTranscoder,
    estimate_duration,
    parse_output_format,
    resample_pcm16,
    ulaw_to_pcm16,
)


@pytest.fixture
def transcoder(tmp_path):
    return AudioTranscoder(output_dir=tmp_path)


def test_estimate_duration():
    # one second of 16kHz mono 16-bit audio
    assert estimate_duration(32000) == pytest.approx(1.0)
    assert estimate_duration(3200) == pytest.approx(0.1)
    assert estimate_duration(16000, sample_rate=8000) == pytest.approx(1.0)


def test_parse_output_format():
    assert parse_output_format("pcm_22050") == ("pcm", 22050)
    assert parse_output_format("ulaw_8000") == ("ulaw", 8000)
    assert parse_output_format(None) == ("pcm", 16000)
    assert parse_output_format("weird") == ("pcm", 16000)


def test_pcm_to_wav_header(transcoder):
    pcm = b"\x01\x00" * 100
    wav_bytes = transcoder.pcm_to_wav(pcm)
    assert wav_bytes[:4] == b"RIFF"
    assert wav_bytes[8:12] == b"WAVE"
    assert len(wav_bytes) == 44 + len(pcm)

    data, rate, channels = transcoder.wav_to_pcm(wav_bytes)
    assert data == pcm
    assert rate == 16000
    assert channels == 1


def test_ulaw_silence_and_peaks():
    decoded = np.frombuffer(ulaw_to_pcm16(bytes([0xFF, 0x7F, 0x00, 0x80])), dtype="<i2")
    assert decoded[0] == 0
    assert decoded[1] == 0
    assert decoded[2] == -32124
    assert decoded[3] == 32124


def test_resample_changes_length():
    samples = np.arange(0, 800, dtype="<i2").tobytes()
    upsampled = resample_pcm16(samples, 8000, 16000)
    assert len(upsampled) == 2 * len(samples)
    assert resample_pcm16(samples, 16000, 16000) is samples
    assert resample_pcm16(b"", 8000, 16000) == b""


def test_to_recording_format_ulaw(transcoder):
    ulaw = bytes([0xFF]) * 80
    pcm = transcoder.to_recording_format(ulaw, "ulaw_8000")
    # 80 samples at 8kHz become 160 samples at 16kHz
    assert len(pcm) == 320
    assert set(np.frombuffer(pcm, dtype="<i2")) == {0}


def test_concatenate_wav(transcoder, tmp_path):
    first = transcoder.pcm_to_wav(b"\x01\x00" * 10)
    second = transcoder.pcm_to_wav(b"\x02\x00" * 20)

    path = transcoder.concatenate_wav([first, second], tmp_path / "joined.wav")

    with wave.open(str(path), "rb") as wav_file:
        assert wav_file.getnframes() == 30
        assert wav_file.getframerate() == 16000


def test_concatenate_rejects_mismatched_formats(transcoder, tmp_path):
    first = transcoder.pcm_to_wav(b"\x00\x00" * 10, sample_rate=16000)
    second = transcoder.pcm_to_wav(b"\x00\x00" * 10, sample_rate=8000)
    with pytest.raises(ValueError):
        transcoder.concatenate_wav([first, second], tmp_path / "bad.wav")


def test_concatenate_rejects_empty(transcoder, tmp_path):
    with pytest.raises(ValueError):
        transcoder.concatenate_wav([], tmp_path / "empty.wav")


def test_build_recording(transcoder, tmp_path):
    path = transcoder.build_recording([b"\x00\x00" * 160, b"", b"\x01\x00" * 160], "call-1")
    assert path == tmp_path / "call-1.wav"
    with wave.open(str(path), "rb") as wav_file:
        assert wav_file.getnchannels() == 1
        assert wav_file.getsampwidth() == 2
        assert wav_file.getnframes() == 320


def test_build_recording_without_audio(transcoder):
    assert transcoder.build_recording([], "call-2") is None
