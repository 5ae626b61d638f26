"""Shared state models for the streamer."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import InvalidVolume

MIN_VOLUME = 0.0
MAX_VOLUME = 2.0

# -----------------------------------------------------------------------------
# State enums
# -----------------------------------------------------------------------------


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RESTARTING = "restarting"
    RECONNECTING = "reconnecting"


class VoiceSessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DESTROYED = "destroyed"


class TranscodeState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED_CLEAN = "exited_clean"
    EXITED_ERROR = "exited_error"
    KILLED = "killed"


class SinkState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    # Holding a stream with no voice client bound.
    PAUSED = "paused"
    ERRORED = "errored"


# -----------------------------------------------------------------------------
# Data
# -----------------------------------------------------------------------------


@dataclass
class MediaSourceConfig:
    """The stream target. Latest value wins."""
    url: str
    auth_header: Optional[str] = None
    volume: float = 1.0

    @property
    def has_auth_header(self) -> bool:
        return bool(self.auth_header)

    def merge(self, url: Optional[str] = None, auth_header: Optional[str] = None) -> None:
        if url is not None:
            self.url = url
        if auth_header is not None:
            # An empty string clears the header.
            self.auth_header = auth_header or None


@dataclass
class TargetChannel:
    channel_id: int
    guild_id: Optional[int] = None


@dataclass(frozen=True)
class SupervisorStatus:
    """Read-only snapshot returned by StreamSupervisor.status()."""
    state: SupervisorState
    channel_id: Optional[int]
    guild_id: Optional[int]
    url: str
    cookie_set: bool
    volume: float
    voice_state: VoiceSessionState
    process_state: TranscodeState
    sink_state: SinkState

    @property
    def streaming(self) -> bool:
        return self.state == SupervisorState.STREAMING


def validate_volume(raw: object) -> float:
    """Parses a volume value, rejecting anything outside [0.0, 2.0]."""
    try:
        volume = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidVolume(raw) from None
    # NaN fails both comparisons
    if not (MIN_VOLUME <= volume <= MAX_VOLUME):
        raise InvalidVolume(raw)
    return volume
