"""
Pydantic models for the Conversational AI websocket protocol.

This module defines structured data models for the inbound events and outbound
messages exchanged with the conversational agent, providing type validation for
the nested ``*_event`` payloads. Unknown extra fields are ignored so that new
server-side attributes do not break parsing.
"""

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConvaiBaseMessage(BaseModel):
    """Base model for all inbound session messages."""

    model_config = ConfigDict(extra="ignore")

    type: str = Field(..., description="Message type identifier")


# Inbound events
class InitiationMetadataEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: Optional[str] = None
    agent_output_audio_format: Optional[str] = None
    user_input_audio_format: Optional[str] = None


class InitiationMetadataMessage(ConvaiBaseMessage):
    """Sent once by the server when the conversation is ready to start."""

    type: Literal["conversation_initiation_metadata"]
    conversation_initiation_metadata_event: InitiationMetadataEvent = Field(
        default_factory=InitiationMetadataEvent
    )


class AudioEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audio_base_64: Optional[str] = None
    event_id: Optional[int] = None
    audio_end_ms: Optional[int] = None


class AudioMessage(ConvaiBaseMessage):
    """A chunk of synthesized agent speech."""

    type: Literal["audio"]
    audio_event: AudioEvent = Field(default_factory=AudioEvent)


class UserTranscriptionEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_transcript: str = ""
    is_final: bool = True
    confidence: Optional[float] = None


class UserTranscriptMessage(ConvaiBaseMessage):
    """Speech-to-text result for the contact's audio."""

    type: Literal["user_transcript"]
    user_transcription_event: UserTranscriptionEvent = Field(
        default_factory=UserTranscriptionEvent
    )


class AgentResponseEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    agent_response: str = ""


class AgentResponseMessage(ConvaiBaseMessage):
    """Text of what the agent is saying."""

    type: Literal["agent_response"]
    agent_response_event: AgentResponseEvent = Field(default_factory=AgentResponseEvent)


class InterruptionMessage(ConvaiBaseMessage):
    """The contact talked over the agent."""

    type: Literal["interruption"]
    interruption_event: Optional[Dict] = None


class ModeChangeEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mode: str = ""


class ModeChangeMessage(ConvaiBaseMessage):
    """Turn-taking update: the agent is ``speaking`` or ``listening``."""

    type: Literal["mode_change"]
    mode_change_event: ModeChangeEvent = Field(default_factory=ModeChangeEvent)


class PingEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_id: Optional[int] = None
    ping_ms: Optional[int] = None


class PingMessage(ConvaiBaseMessage):
    """Server keep-alive probe."""

    type: Literal["ping"]
    ping_event: PingEvent = Field(default_factory=PingEvent)


# Outbound messages
class ClientDataMessage(BaseModel):
    """Per-call context variables sent before any audio."""

    type: Literal["conversation_initiation_client_data"] = "conversation_initiation_client_data"
    dynamic_variables: Dict[str, str] = Field(default_factory=dict)


class UserAudioChunkMessage(BaseModel):
    """Base64 encoded PCM audio from the contact."""

    user_audio_chunk: str


class PongMessage(BaseModel):
    """Reply to a server ping."""

    type: Literal["pong"] = "pong"
    event_id: Optional[int] = None


class KeepAliveMessage(BaseModel):
    """Client-initiated keep-alive."""

    type: Literal["ping"] = "ping"
