"""Configuration models for the application."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import logging
_LOGGER = logging.getLogger(__name__)

DEFAULT_STREAM_URL = "https://tv.nknews.org/tvdash/stream.mpd"

# -----------------------------------------------------------------------------
# Configuration Dataclasses
# -----------------------------------------------------------------------------

@dataclass
class DiscordConfig:
    """Credentials and the single authorized operator."""
    token: str = ""
    owner_id: Optional[int] = None


@dataclass
class StreamConfig:
    """Initial stream target. Changed at runtime through DM commands."""
    url: str = DEFAULT_STREAM_URL
    cookie: Optional[str] = None
    volume: float = 1.0
    channel_id: Optional[int] = None
    # Start streaming on login when channel_id is set.
    autostart: bool = False


@dataclass
class TranscoderConfig:
    """Settings for the ffmpeg subprocess."""
    ffmpeg_path: str = "ffmpeg"


@dataclass
class RecoveryConfig:
    """Timings of the restart and reconnect policy, in seconds."""
    respawn_delay: float = 5.0
    reconnect_interval: float = 30.0
    voice_recovery_timeout: float = 30.0
    connect_timeout: float = 20.0
    voice_poll_interval: float = 1.0


@dataclass
class VoiceConfig:
    self_deaf: bool = False


@dataclass
class AppConfig:
    """General application settings."""
    name: str = "discord-live-streamer"
    debug: bool = False


@dataclass
class Config:
    """Main configuration object."""
    app: AppConfig = field(default_factory=AppConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    transcoder: TranscoderConfig = field(default_factory=TranscoderConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)

# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------

def _optional_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def load_config_from_json(config_path: Optional[Path]) -> Config:
    """Loads configuration from a JSON file and populates dataclasses.

    A missing path yields the defaults; environment variables
    STREAMER_TOKEN and STREAMER_OWNER_ID override the file.
    """

    # --- Step 1: Load raw JSON data ---
    raw_data: dict = {}
    if config_path is not None:
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
        except FileNotFoundError:
            _LOGGER.critical("Configuration file not found at: %s", config_path)
            raise
        except json.JSONDecodeError as e:
            _LOGGER.critical("Error parsing configuration file: %s", e)
            raise

    # --- Step 2: Create config objects from raw data ---
    app_config = AppConfig(**raw_data.get("app", {}))
    discord_config = DiscordConfig(**raw_data.get("discord", {}))
    stream_config = StreamConfig(**raw_data.get("stream", {}))
    transcoder_config = TranscoderConfig(**raw_data.get("transcoder", {}))
    recovery_config = RecoveryConfig(**raw_data.get("recovery", {}))
    voice_config = VoiceConfig(**raw_data.get("voice", {}))

    # --- Step 3: Environment overrides and id normalization ---
    discord_config.token = os.environ.get("STREAMER_TOKEN", discord_config.token)
    discord_config.owner_id = _optional_int(
        os.environ.get("STREAMER_OWNER_ID", discord_config.owner_id)
    )
    stream_config.channel_id = _optional_int(stream_config.channel_id)

    return Config(
        app=app_config,
        discord=discord_config,
        stream=stream_config,
        transcoder=transcoder_config,
        recovery=recovery_config,
        voice=voice_config,
    )
