"""
Audio module: format conversion, the local capture relay and playback sinks.

Key components:
- transcoder: PCM <-> WAV conversion, resampling of agent audio, duration
  estimates and concatenation of the per-call recording.
- relay: CaptureRelay, a FastAPI websocket served by uvicorn on a local port that
  receives PCM frames from the injected capture script.
- capture_script: The JavaScript capture graph injected into the telephony page.
- playback: Outbound sinks for agent speech (PyAudio device, in-page relay, null).
"""

from callbridge.audio.playback import AudioPlayer, NullPlayer, PyAudioPlayer, RelayPlayer
from callbridge.audio.relay import CaptureRelay
from callbridge.audio.transcoder import AudioTranscoder, estimate_duration
