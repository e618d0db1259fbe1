"""
callbridge - Web Dialer to Conversational AI Bridge

This package places outbound calls through a browser-based telephony dialer and
connects the answered call to an ElevenLabs Conversational AI agent, streaming
the contact's audio to the agent and playing the agent's speech back into the
call in real time.

Architecture Overview:
- A call state detector samples the dialer page and drives the call lifecycle
  (dialing, ringing, connected, voicemail, ended, failed) with watchdogs that
  always release the line.
- An audio stream handler captures call audio through a local FastAPI/uvicorn
  websocket relay, forwards it to the agent and plays agent audio on a single
  outbound device.
- A conversational session client keeps one websocket session per call alive,
  buffering audio until the agent is ready and reconnecting on drops.

Key Components:
- audio: Transcoding, the capture relay and playback sinks
- bot: The conversational session client and the audio stream handler
- config: Constants, logging setup and environment-backed settings
- models: Call state, transcript and wire protocol data structures
- services: Storage of recordings and transcripts
- telephony: Page signal sampling, the call state machine and the detector
- call_session: Per-call wiring of all of the above

Getting Started:
1. Set up environment variables:
   - ELEVENLABS_API_KEY: Your ElevenLabs API key
   - ELEVENLABS_AGENT_ID: The conversational agent to connect calls to
   - VAC_PLAYBACK_DEVICE / VAC_CAPTURE_DEVICE: Virtual audio cable names
   - LOG_LEVEL: Logging level (default INFO)

2. Drive a call from an automation script that owns a Playwright page:
   ```python
   session = CallSession(page, call_id, load_settings(), storage=storage)
   final_state = await session.run()
   ```
"""
