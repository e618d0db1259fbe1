"""
Constants and configuration values used throughout the application.

This module defines constants that are used across different parts of the application,
providing a centralized location for wire names, audio formats and timing defaults so
that the detector, the session client and the stream handler agree on them.
"""

# Logger name used throughout the application
LOGGER_NAME = "callbridge"

# Conversational AI endpoint
CONVAI_WS_URL = "wss://api.elevenlabs.io/v1/convai/conversation"

# Audio format constants
AUDIO_SAMPLE_RATE = 16000
AUDIO_CHANNELS = 1
AUDIO_SAMPLE_WIDTH = 2  # bytes, 16-bit PCM
AUDIO_FORMAT_PCM_16000 = "pcm_16000"

# Inbound message types
MESSAGE_TYPE_INITIATION_METADATA = "conversation_initiation_metadata"
MESSAGE_TYPE_AUDIO = "audio"
MESSAGE_TYPE_USER_TRANSCRIPT = "user_transcript"
MESSAGE_TYPE_AGENT_RESPONSE = "agent_response"
MESSAGE_TYPE_AGENT_RESPONSE_CORRECTION = "agent_response_correction"
MESSAGE_TYPE_INTERRUPTION = "interruption"
MESSAGE_TYPE_MODE_CHANGE = "mode_change"
MESSAGE_TYPE_PING = "ping"
MESSAGE_TYPE_PONG = "pong"
MESSAGE_TYPE_ERROR = "error"

# Agent phrases that signal the conversation is wrapping up
CLOSING_PHRASES = (
    "goodbye",
    "god bless",
    "have a great",
    "have a blessed",
    "thank you so much",
    "take care",
    "talk to you",
    "speak with you later",
)

# Relay control message types sent by the in-page capture script
RELAY_CONTROL_CAPTURE_STARTED = "capture_started"
RELAY_CONTROL_DEVICE_SELECTED = "device_selected"
RELAY_CONTROL_ERROR = "error"
RELAY_CONTROL_FLUSH_PLAYBACK = "flush_playback"
RELAY_AUDIO_PATH = "/audio"
