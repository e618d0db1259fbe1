"""
Environment-backed settings for a calling run.

Values are read from the process environment (optionally seeded from a ``.env``
file) and validated with pydantic so that a misconfigured deployment fails before
the first number is dialed rather than in the middle of a call.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

import dotenv
from pydantic import BaseModel, Field, field_validator

from callbridge.config.constants import AUDIO_SAMPLE_RATE, CONVAI_WS_URL
from callbridge.config.logging_config import configure_logging


class MonitorConfig(BaseModel):
    """Timing and UI-matching knobs for the call state detector (seconds)."""

    settle_interval: float = Field(3.0, gt=0, description="Wait before the definitive check")
    poll_interval: float = Field(0.5, gt=0, description="Polling period once the call is up")
    dialing_timeout: float = Field(30.0, gt=0)
    ringing_timeout: float = Field(45.0, gt=0)
    voicemail_timeout: float = Field(5.0, gt=0)
    inactivity_timeout: float = Field(15.0, gt=0)
    max_call_duration: float = Field(600.0, gt=0)
    hangup_on_voicemail: bool = True
    hangup_settle: float = Field(1.0, ge=0, description="Wait after each hang-up strategy")
    reload_timeout_ms: int = Field(10000, gt=0)
    screenshot_dir: Optional[Path] = None
    hangup_selectors: List[str] = Field(
        default_factory=lambda: [
            'button[aria-label*="End call"]',
            'button[aria-label*="Hang up"]',
            'button[aria-label*="end call"]',
            'button[aria-label*="hang up"]',
            'button[aria-label*="End Call"]',
            'button[aria-label*="Hangup"]',
            'button[aria-label*="HANG UP"]',
            "button.hangup-button",
            '[gv-id="call-hangup"]',
            '[gv-id="hangup"]',
            'button[data-action="hangup"]',
            "button.end-call",
            "[data-hangup-button]",
        ]
    )
    hangup_labels: List[str] = Field(
        default_factory=lambda: ["end call", "hang up", "hangup", "end"]
    )
    call_surface_selectors: List[str] = Field(
        default_factory=lambda: [
            '[gv-id="ongoing-call-pane"]',
            "[data-call-pane]",
            ".call-container",
            "[data-call-active]",
        ]
    )
    call_timer_selectors: List[str] = Field(
        default_factory=lambda: [
            ".call-timer",
            "[data-call-duration]",
            ".call-duration",
            ".duration",
            ".timer",
            ".elapsed-time",
        ]
    )
    outside_click_position: List[int] = Field(default_factory=lambda: [50, 50])


class SessionConfig(BaseModel):
    """Connection parameters for one conversational AI session."""

    api_key: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    url: str = CONVAI_WS_URL
    dynamic_variables: Dict[str, str] = Field(default_factory=dict)
    connect_timeout: float = Field(10.0, gt=0)
    ping_interval: float = Field(10.0, gt=0)
    ready_delay: float = Field(0.2, ge=0)
    max_reconnect_attempts: int = Field(5, ge=0)
    reconnect_delay: float = Field(2.0, ge=0)
    max_buffered_chunks: int = Field(500, gt=0)

    @field_validator("api_key", "agent_id")
    def strip_credentials(cls, v):
        """Reject credentials that are only whitespace."""
        if not v.strip():
            raise ValueError("credential cannot be blank")
        return v.strip()


class StreamConfig(BaseModel):
    """Gates, bounds and timers used by the audio stream handler."""

    sample_rate: int = Field(AUDIO_SAMPLE_RATE, gt=0)
    min_chunk_bytes: int = Field(320, ge=0, description="Frames shorter than this are dropped")
    playback_gate: float = Field(0.2, ge=0, description="Echo window after agent playback")
    max_consecutive_errors: int = Field(10, gt=0)
    hangup_grace: float = Field(8.0, ge=0)
    recordings_dir: Path = Path("recordings")
    relay_host: str = "127.0.0.1"
    capture_device: Optional[str] = None
    playback_device: Optional[str] = None
    in_page_playback: bool = False
    record_placeholders: bool = False


class Settings(BaseModel):
    """Top-level settings assembled from the environment."""

    elevenlabs_api_key: str = Field(..., min_length=1)
    elevenlabs_agent_id: str = Field(..., min_length=1)
    log_level: str = "INFO"
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)

    @field_validator("log_level")
    def validate_log_level(cls, v):
        """Only accept level names the logging module understands."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level: {v}")
        return level

    def session_config(self, dynamic_variables: Optional[Dict[str, str]] = None) -> SessionConfig:
        """Build the per-call session configuration."""
        return SessionConfig(
            api_key=self.elevenlabs_api_key,
            agent_id=self.elevenlabs_agent_id,
            dynamic_variables=dynamic_variables or {},
        )


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """
    Load and validate settings from the environment, then apply the log level.

    Args:
        env_file: Optional path to a dotenv file; ``./.env`` is used when present

    Returns:
        Settings: Validated settings

    Raises:
        pydantic.ValidationError: If a required variable is missing or malformed
    """
    env_path = env_file or Path(".") / ".env"
    if env_path.exists():
        dotenv.load_dotenv(env_path)

    stream_overrides = {}
    if os.getenv("RECORDINGS_DIR"):
        stream_overrides["recordings_dir"] = os.getenv("RECORDINGS_DIR")
    if os.getenv("VAC_CAPTURE_DEVICE"):
        stream_overrides["capture_device"] = os.getenv("VAC_CAPTURE_DEVICE")
    if os.getenv("VAC_PLAYBACK_DEVICE"):
        stream_overrides["playback_device"] = os.getenv("VAC_PLAYBACK_DEVICE")

    monitor_overrides = {}
    if os.getenv("SCREENSHOT_DIR"):
        monitor_overrides["screenshot_dir"] = os.getenv("SCREENSHOT_DIR")

    settings = Settings(
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_agent_id=os.getenv("ELEVENLABS_AGENT_ID", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        monitor=MonitorConfig(**monitor_overrides),
        stream=StreamConfig(**stream_overrides),
    )
    configure_logging(settings.log_level)
    return settings
