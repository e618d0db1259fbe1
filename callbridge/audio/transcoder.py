"""
Audio format helpers for the call recording and the playback path.

Everything here works on raw little-endian 16-bit PCM. Capture frames arrive from
the browser as mono 16 kHz PCM; agent audio may be delivered at another rate (or
as 8 kHz mu-law) and is normalized to the recording format before it is stored.
"""

import io
import logging
import wave
from pathlib import Path
from typing import Iterable, Optional, Tuple

import numpy as np

from callbridge.config.constants import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE,
    AUDIO_SAMPLE_WIDTH,
    LOGGER_NAME,
)

logger = logging.getLogger(LOGGER_NAME)


def estimate_duration(
    num_bytes: int,
    sample_rate: int = AUDIO_SAMPLE_RATE,
    sample_width: int = AUDIO_SAMPLE_WIDTH,
    channels: int = AUDIO_CHANNELS,
) -> float:
    """Seconds of audio represented by ``num_bytes`` of PCM."""
    bytes_per_second = sample_rate * sample_width * channels
    if bytes_per_second <= 0:
        return 0.0
    return num_bytes / bytes_per_second


def parse_output_format(audio_format: Optional[str]) -> Tuple[str, int]:
    """
    Split a format tag such as ``pcm_22050`` or ``ulaw_8000`` into codec and rate.

    Unknown or missing tags fall back to 16 kHz PCM.
    """
    if not audio_format:
        return "pcm", AUDIO_SAMPLE_RATE
    codec, _, rate = audio_format.partition("_")
    try:
        return codec.lower(), int(rate)
    except ValueError:
        logger.warning(f"Unrecognized audio format tag: {audio_format}")
        return "pcm", AUDIO_SAMPLE_RATE


def ulaw_to_pcm16(data: bytes) -> bytes:
    """Decode G.711 mu-law bytes to 16-bit PCM."""
    u = ~np.frombuffer(data, dtype=np.uint8)
    sign = u & 0x80
    exponent = (u >> 4) & 0x07
    mantissa = u & 0x0F
    magnitude = ((mantissa.astype(np.int32) << 3) + 0x84) << exponent
    samples = np.where(sign != 0, 0x84 - magnitude, magnitude - 0x84)
    return samples.astype("<i2").tobytes()


def resample_pcm16(data: bytes, from_rate: int, to_rate: int) -> bytes:
    """Linear-interpolation resample of mono 16-bit PCM."""
    if from_rate == to_rate or not data:
        return data
    samples = np.frombuffer(data[: len(data) - len(data) % 2], dtype="<i2")
    if samples.size == 0:
        return b""
    target_len = max(1, int(round(samples.size * to_rate / from_rate)))
    source_positions = np.arange(samples.size)
    target_positions = np.linspace(0, samples.size - 1, target_len)
    resampled = np.interp(target_positions, source_positions, samples.astype(np.float64))
    return np.clip(np.round(resampled), -32768, 32767).astype("<i2").tobytes()


class AudioTranscoder:
    """
    Converts between raw PCM and WAV and assembles the per-call recording.
    """

    def __init__(
        self,
        output_dir: Path = Path("recordings"),
        sample_rate: int = AUDIO_SAMPLE_RATE,
        channels: int = AUDIO_CHANNELS,
    ):
        self.output_dir = Path(output_dir)
        self.sample_rate = sample_rate
        self.channels = channels

    def pcm_to_wav(self, pcm: bytes, sample_rate: Optional[int] = None, channels: Optional[int] = None) -> bytes:
        """Wrap raw PCM in a minimal 44-byte WAV header."""
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav_file:
            wav_file.setnchannels(channels or self.channels)
            wav_file.setsampwidth(AUDIO_SAMPLE_WIDTH)
            wav_file.setframerate(sample_rate or self.sample_rate)
            wav_file.writeframes(pcm)
        return buffer.getvalue()

    def wav_to_pcm(self, wav_bytes: bytes) -> Tuple[bytes, int, int]:
        """Return ``(pcm, sample_rate, channels)`` from a WAV payload."""
        with wave.open(io.BytesIO(wav_bytes), "rb") as wav_file:
            if wav_file.getsampwidth() != AUDIO_SAMPLE_WIDTH:
                raise ValueError(f"Unsupported sample width: {wav_file.getsampwidth()}")
            return (
                wav_file.readframes(wav_file.getnframes()),
                wav_file.getframerate(),
                wav_file.getnchannels(),
            )

    def to_recording_format(self, data: bytes, audio_format: Optional[str]) -> bytes:
        """Normalize agent audio to mono 16-bit PCM at the recording rate."""
        codec, rate = parse_output_format(audio_format)
        if codec == "ulaw":
            data = ulaw_to_pcm16(data)
        return resample_pcm16(data, rate, self.sample_rate)

    def concatenate_wav(self, wav_segments: Iterable[bytes], output_path: Path) -> Path:
        """
        Concatenate WAV payloads that share one format into a single WAV file.

        Raises:
            ValueError: If there is nothing to concatenate or the formats differ
        """
        segments = list(wav_segments)
        if not segments:
            raise ValueError("No WAV segments to concatenate")

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        expected = None
        with wave.open(str(output_path), "wb") as out:
            for index, segment in enumerate(segments):
                pcm, rate, channels = self.wav_to_pcm(segment)
                if expected is None:
                    expected = (rate, channels)
                    out.setnchannels(channels)
                    out.setsampwidth(AUDIO_SAMPLE_WIDTH)
                    out.setframerate(rate)
                elif (rate, channels) != expected:
                    raise ValueError(
                        f"Segment {index} format {rate}Hz/{channels}ch does not match {expected}"
                    )
                out.writeframes(pcm)

        logger.info(f"Wrote {len(segments)} segment(s) to {output_path}")
        return output_path

    def build_recording(self, pcm_segments: Iterable[bytes], call_id: str) -> Optional[Path]:
        """
        Wrap each PCM segment as WAV and concatenate them into ``<call_id>.wav``.

        Returns:
            The recording path, or None when no audio was accumulated
        """
        wav_segments = [self.pcm_to_wav(segment) for segment in pcm_segments if segment]
        if not wav_segments:
            logger.info(f"No audio captured for call {call_id}, skipping recording")
            return None
        return self.concatenate_wav(wav_segments, self.output_dir / f"{call_id}.wav")
