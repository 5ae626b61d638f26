"""Tests for process lifetime: login failure, missing token and shutdown signals."""

import asyncio
import os
import signal
import sys

import discord
import pytest

from discord_live_streamer.__main__ import _shutdown, main
from discord_live_streamer.bot import StreamerBot
from discord_live_streamer.config import Config, DiscordConfig
from discord_live_streamer.errors import AuthenticationFailure
from discord_live_streamer.event_bus import EventBus
from discord_live_streamer.models import SupervisorState


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    monkeypatch.delenv("STREAMER_TOKEN", raising=False)
    monkeypatch.delenv("STREAMER_OWNER_ID", raising=False)


@pytest.fixture
def lifecycle(monkeypatch) -> list:
    """Records supervisor stop and client close calls, in order."""
    calls: list = []
    original_init = StreamerBot.__init__

    def init(self, *args, **kwargs) -> None:
        original_init(self, *args, **kwargs)
        supervisor_stop = self.supervisor.stop

        async def stop():
            calls.append("stop")
            return await supervisor_stop()

        self.supervisor.stop = stop

    async def client_close(self) -> None:
        calls.append("client_close")
        self._closing_task = asyncio.current_task()

    monkeypatch.setattr(StreamerBot, "__init__", init)
    monkeypatch.setattr(discord.Client, "close", client_close)
    return calls


@pytest.mark.asyncio
async def test_missing_token_exits_with_error() -> None:
    assert await main([]) == 1


@pytest.mark.asyncio
async def test_login_failure_exits_with_error(monkeypatch, lifecycle) -> None:
    bots: list = []

    async def login(self, token: str) -> None:
        bots.append(self)
        raise discord.LoginFailure("Improper token has been passed.")

    monkeypatch.setenv("STREAMER_TOKEN", "bad-token")
    monkeypatch.setattr(StreamerBot, "login", login)

    assert await main([]) == 1

    assert lifecycle == ["stop", "client_close"]
    assert bots[0].supervisor.state == SupervisorState.STOPPED


@pytest.mark.asyncio
async def test_serve_maps_login_failure(monkeypatch) -> None:
    async def login(self, token: str) -> None:
        raise discord.LoginFailure("Improper token has been passed.")

    monkeypatch.setattr(StreamerBot, "login", login)
    bot = StreamerBot(config=Config(discord=DiscordConfig(token="x")), event_bus=EventBus())

    with pytest.raises(AuthenticationFailure):
        await bot.serve("x")


@pytest.mark.asyncio
async def test_close_stops_supervisor_before_client(lifecycle) -> None:
    bot = StreamerBot(config=Config(discord=DiscordConfig(token="x")), event_bus=EventBus())

    await _shutdown(bot, signal.SIGINT)

    assert lifecycle == ["stop", "client_close"]
    assert bot.supervisor.state == SupervisorState.STOPPED
    assert bot.supervisor.desired == SupervisorState.STOPPED


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals")
@pytest.mark.asyncio
async def test_sigterm_shuts_down_cleanly(monkeypatch, lifecycle) -> None:
    async def serve(self, token: str) -> None:
        os.kill(os.getpid(), signal.SIGTERM)
        while not self.is_closed():
            await asyncio.sleep(0.01)

    monkeypatch.setenv("STREAMER_TOKEN", "token")
    monkeypatch.setattr(StreamerBot, "serve", serve)

    assert await asyncio.wait_for(main([]), timeout=5.0) == 0
    assert lifecycle == ["stop", "client_close"]
