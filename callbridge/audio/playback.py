"""
Outbound audio sinks for agent speech.

The stream handler's single playback consumer is the only caller of a player, so
implementations do not need to guard against concurrent ``play`` calls. ``stop``
may be called from another task while ``play`` is in flight and must make the
in-flight call return promptly.
"""

import asyncio
import logging
from typing import Optional, Protocol

from callbridge.config.constants import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE,
    LOGGER_NAME,
    RELAY_CONTROL_FLUSH_PLAYBACK,
)

logger = logging.getLogger(LOGGER_NAME)

# 20ms of 16kHz mono PCM16; writes are sliced so stop() takes effect quickly
WRITE_SLICE_BYTES = 640


class AudioPlayer(Protocol):
    async def play(self, pcm: bytes, sample_rate: int) -> None: ...

    async def stop(self) -> None: ...

    async def close(self) -> None: ...


class NullPlayer:
    """Discards audio. Used when no output device is configured."""

    def __init__(self):
        self.played = 0

    async def play(self, pcm: bytes, sample_rate: int) -> None:
        self.played += 1

    async def stop(self) -> None:
        pass

    async def close(self) -> None:
        pass


class RelayPlayer:
    """Sends agent audio back to the page over the local capture relay."""

    def __init__(self, relay):
        self.relay = relay

    async def play(self, pcm: bytes, sample_rate: int) -> None:
        await self.relay.send_audio(pcm)

    async def stop(self) -> None:
        """Ask the page to drop audio it has already scheduled."""
        await self.relay.send_control({"type": RELAY_CONTROL_FLUSH_PLAYBACK})

    async def close(self) -> None:
        pass


class PyAudioPlayer:
    """
    Plays PCM16 on a local output device (typically a virtual audio cable that the
    browser uses as its microphone).
    """

    def __init__(self, device_name: Optional[str] = None, channels: int = AUDIO_CHANNELS):
        self.device_name = device_name
        self.channels = channels
        self._pa = None
        self._stream = None
        self._stream_rate: Optional[int] = None
        self._stopped = False
        self._pending: Optional[asyncio.Future] = None

    def _find_device_index(self) -> Optional[int]:
        if not self.device_name:
            return None
        for index in range(self._pa.get_device_count()):
            info = self._pa.get_device_info_by_index(index)
            if self.device_name.lower() in info.get("name", "").lower() and info.get("maxOutputChannels", 0) > 0:
                logger.info(f"Using playback device [{index}] {info.get('name')}")
                return index
        logger.warning(f"Playback device '{self.device_name}' not found, using default output")
        return None

    def _open(self, sample_rate: int) -> None:
        # PyAudio needs the PortAudio system library, so it is only imported when a
        # physical device is actually used.
        import pyaudio

        if self._pa is None:
            self._pa = pyaudio.PyAudio()
        if self._stream is not None and self._stream_rate == sample_rate:
            return
        self._close_stream()
        self._stream = self._pa.open(
            format=pyaudio.paInt16,
            channels=self.channels,
            rate=sample_rate,
            output=True,
            output_device_index=self._find_device_index(),
        )
        self._stream_rate = sample_rate

    async def play(self, pcm: bytes, sample_rate: int = AUDIO_SAMPLE_RATE) -> None:
        loop = asyncio.get_running_loop()
        self._stopped = False
        await self._run_blocking(loop, self._open, sample_rate)
        for offset in range(0, len(pcm), WRITE_SLICE_BYTES):
            if self._stopped:
                logger.debug("Playback stopped mid-chunk")
                return
            await self._run_blocking(loop, self._stream.write, pcm[offset:offset + WRITE_SLICE_BYTES])

    async def _run_blocking(self, loop, func, *args) -> None:
        # The executor call keeps running if play() is cancelled; close() waits for it
        self._pending = loop.run_in_executor(None, func, *args)
        await asyncio.shield(self._pending)

    async def stop(self) -> None:
        self._stopped = True

    def _close_stream(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except Exception as e:
                logger.warning(f"Error closing playback stream: {e}")
            self._stream = None
            self._stream_rate = None

    async def close(self) -> None:
        self._stopped = True
        if self._pending is not None and not self._pending.done():
            await asyncio.wait({self._pending})
        self._close_stream()
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None
        logger.info("Playback device closed")
