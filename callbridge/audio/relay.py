"""
Local websocket relay between the controlled browser page and the host process.

The injected capture script connects to ``ws://127.0.0.1:<port>/audio`` and sends
raw PCM16 frames as binary messages and small JSON control messages as text. The
relay runs its own FastAPI application on a uvicorn server bound to a free local
port for the lifetime of one call.
"""

import asyncio
import json
import logging
import socket
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from callbridge.config.constants import (
    LOGGER_NAME,
    RELAY_AUDIO_PATH,
    RELAY_CONTROL_CAPTURE_STARTED,
    RELAY_CONTROL_DEVICE_SELECTED,
    RELAY_CONTROL_ERROR,
)

logger = logging.getLogger(LOGGER_NAME)

FrameHandler = Callable[[bytes], None]
ControlHandler = Callable[[Dict[str, Any]], None]

STARTUP_TIMEOUT = 5.0  # seconds


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class CaptureRelay:
    """
    Accepts one page connection and hands frames to the stream handler.

    ``on_frame`` is called synchronously for every binary message and must not
    block. ``on_control`` receives decoded JSON control messages.
    """

    def __init__(
        self,
        on_frame: FrameHandler,
        on_control: Optional[ControlHandler] = None,
        host: str = "127.0.0.1",
        port: Optional[int] = None,
    ):
        self.on_frame = on_frame
        self.on_control = on_control
        self.host = host
        self.port = port
        self.app = self._build_app()
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._connection: Optional[WebSocket] = None
        self._closed = False
        self.frames_received = 0
        self.device_label: Optional[str] = None

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}{RELAY_AUDIO_PATH}"

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="callbridge capture relay")

        @app.websocket(RELAY_AUDIO_PATH)
        async def audio_endpoint(websocket: WebSocket):
            await self.handle_connection(websocket)

        return app

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Receive loop for a single page connection."""
        await websocket.accept()
        if self._connection is not None:
            logger.warning("Replacing existing capture relay connection")
        self._connection = websocket
        logger.info("Capture relay connected")

        try:
            while not self._closed:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    self.frames_received += 1
                    self.on_frame(message["bytes"])
                elif message.get("text") is not None:
                    self._handle_control(message["text"])
        except WebSocketDisconnect:
            logger.info("Capture relay disconnected by page")
        except Exception as e:
            logger.error(f"Error in capture relay connection: {e}", exc_info=True)
        finally:
            if self._connection is websocket:
                self._connection = None
            logger.info(f"Capture relay connection closed after {self.frames_received} frames")

    def _handle_control(self, text: str) -> None:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Received invalid control message: {text[:100]}")
            return

        message_type = data.get("type")
        if message_type == RELAY_CONTROL_DEVICE_SELECTED:
            self.device_label = data.get("label")
            logger.info(f"Page selected capture device: {self.device_label}")
        elif message_type == RELAY_CONTROL_CAPTURE_STARTED:
            logger.info(f"Page capture started at {data.get('sampleRate')}Hz")
        elif message_type == RELAY_CONTROL_ERROR:
            logger.error(f"Page capture error: {data.get('message')}")
        else:
            logger.debug(f"Unhandled relay control message: {message_type}")

        if self.on_control:
            self.on_control(data)

    async def start(self) -> None:
        """Serve the relay app on a free local port."""
        if self._serve_task is not None:
            return
        if self.port is None:
            self.port = find_free_port(self.host)

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            lifespan="off",
            ws_max_size=16 * 1024 * 1024,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve())

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT
        while not self._server.started:
            if self._serve_task.done():
                raise RuntimeError(f"Capture relay failed to start on port {self.port}")
            if loop.time() > deadline:
                raise TimeoutError(f"Capture relay did not start within {STARTUP_TIMEOUT}s")
            await asyncio.sleep(0.05)
        logger.info(f"Capture relay listening on {self.url}")

    async def send_audio(self, pcm: bytes) -> bool:
        """Send agent audio to the page for in-page playback."""
        if self._connection is None or self._closed:
            return False
        try:
            await self._connection.send_bytes(pcm)
            return True
        except Exception as e:
            logger.warning(f"Failed to send audio to page: {e}")
            return False

    async def send_control(self, payload: Dict[str, Any]) -> bool:
        """Send a JSON control message to the page."""
        if self._connection is None or self._closed:
            return False
        try:
            await self._connection.send_text(json.dumps(payload))
            return True
        except Exception as e:
            logger.warning(f"Failed to send control message to page: {e}")
            return False

    async def close(self) -> None:
        """Close the page connection and stop the server. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._connection is not None:
            try:
                await self._connection.close()
            except Exception as e:
                logger.debug(f"Error closing relay connection: {e}")
            self._connection = None

        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            try:
                await asyncio.wait_for(self._serve_task, timeout=STARTUP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Capture relay server did not exit in time, cancelling")
                self._serve_task.cancel()
            except Exception as e:
                logger.warning(f"Capture relay server exited with error: {e}")
            self._serve_task = None
        logger.info("Capture relay closed")
