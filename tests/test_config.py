"""Tests for configuration loading."""

import json

import pytest

from discord_live_streamer.config import DEFAULT_STREAM_URL, load_config_from_json


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    monkeypatch.delenv("STREAMER_TOKEN", raising=False)
    monkeypatch.delenv("STREAMER_OWNER_ID", raising=False)


def test_defaults_without_file() -> None:
    config = load_config_from_json(None)

    assert config.discord.token == ""
    assert config.discord.owner_id is None
    assert config.stream.url == DEFAULT_STREAM_URL
    assert config.stream.channel_id is None
    assert config.recovery.respawn_delay == 5.0
    assert config.recovery.reconnect_interval == 30.0
    assert config.transcoder.ffmpeg_path == "ffmpeg"


def test_file_sections_are_loaded(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "discord": {"token": "abc", "owner_id": "42"},
                "stream": {"url": "https://example.test/x.mpd", "channel_id": "111", "autostart": True},
                "recovery": {"respawn_delay": 1.5},
                "voice": {"self_deaf": True},
            }
        )
    )

    config = load_config_from_json(path)

    assert config.discord.token == "abc"
    assert config.discord.owner_id == 42
    assert config.stream.channel_id == 111
    assert config.stream.autostart is True
    assert config.recovery.respawn_delay == 1.5
    assert config.recovery.reconnect_interval == 30.0
    assert config.voice.self_deaf is True


def test_environment_overrides_file(tmp_path, monkeypatch) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"discord": {"token": "from-file", "owner_id": 1}}))
    monkeypatch.setenv("STREAMER_TOKEN", "from-env")
    monkeypatch.setenv("STREAMER_OWNER_ID", "77")

    config = load_config_from_json(path)

    assert config.discord.token == "from-env"
    assert config.discord.owner_id == 77


def test_missing_file_raises(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config_from_json(tmp_path / "missing.json")


def test_invalid_json_raises(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(json.JSONDecodeError):
        load_config_from_json(path)


def test_unknown_key_is_rejected(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"stream": {"bitrate": 96}}))
    with pytest.raises(TypeError):
        load_config_from_json(path)
