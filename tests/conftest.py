"""
Pytest configuration and fakes for the streamer test suite.

- pytest-asyncio for coroutine tests
- Fake discord client / channels / voice clients
- Fake transcoder with the TranscodeProcess interface
"""

import asyncio
import dataclasses
import io
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import discord
import pytest
import pytest_asyncio

from discord_live_streamer.config import RecoveryConfig
from discord_live_streamer.errors import ProcessSpawnFailure
from discord_live_streamer.event_bus import TRANSCODER_EXITED, EventBus
from discord_live_streamer.models import MediaSourceConfig, TranscodeState
from discord_live_streamer.playback import PlaybackSink
from discord_live_streamer.supervisor import StreamSupervisor
from discord_live_streamer.voice_session import VoiceSession

pytest_plugins = ["pytest_asyncio"]

FAST_RECOVERY = RecoveryConfig(
    respawn_delay=0.05,
    reconnect_interval=0.05,
    voice_recovery_timeout=0.1,
    connect_timeout=0.5,
    voice_poll_interval=0.01,
)


# -----------------------------------------------------------------------------
# Discord fakes
# -----------------------------------------------------------------------------

class FakeResponse:
    status = 404
    reason = "Not Found"


class FakeVoiceClient:
    def __init__(self, channel: "FakeChannel") -> None:
        self.channel = channel
        self.connected = True
        self.disconnect_calls = 0
        self.played: List[tuple] = []
        self.stop_calls = 0
        self._playing = False

    def is_connected(self) -> bool:
        return self.connected

    def is_playing(self) -> bool:
        return self._playing

    def is_paused(self) -> bool:
        return False

    def play(self, source, *, after=None) -> None:
        if not self.connected:
            raise discord.ClientException("Not connected to voice.")
        self.played.append((source, after))
        self._playing = True

    def stop(self) -> None:
        self.stop_calls += 1
        self._playing = False

    async def disconnect(self, *, force: bool = False) -> None:
        self.disconnect_calls += 1
        self.connected = False
        self._playing = False
        if self.channel.guild.voice_client is self:
            self.channel.guild.voice_client = None

    def finish(self, error: Optional[Exception] = None) -> None:
        """Simulates the player thread ending the current source."""
        _source, after = self.played[-1]
        self._playing = False
        after(error)

    @property
    def source(self):
        return self.played[-1][0] if self.played else None


@dataclass
class FakeGuild:
    id: int
    voice_client: Optional[FakeVoiceClient] = None


class FakeChannel:
    def __init__(self, channel_id: int, guild: FakeGuild) -> None:
        self.id = channel_id
        self.guild = guild
        self.voice_clients: List[FakeVoiceClient] = []
        self.connect_calls = 0
        # Exceptions raised by upcoming connect() calls, in order.
        self.failures: List[BaseException] = []
        self.always_fail: Optional[BaseException] = None

    async def connect(self, *, timeout: float, reconnect: bool, self_deaf: bool) -> FakeVoiceClient:
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.always_fail is not None:
            raise self.always_fail
        if self.failures:
            raise self.failures.pop(0)
        vc = FakeVoiceClient(self)
        self.voice_clients.append(vc)
        self.guild.voice_client = vc
        return vc

    @property
    def last_vc(self) -> FakeVoiceClient:
        return self.voice_clients[-1]


class FakeTextChannel:
    def __init__(self, channel_id: int, guild: FakeGuild) -> None:
        self.id = channel_id
        self.guild = guild


class FakeClient:
    """Directory lookup: cached channels plus an API fallback."""

    def __init__(self) -> None:
        self.cached: Dict[int, object] = {}
        self.remote: Dict[int, object] = {}

    def add_voice_channel(self, channel_id: int, guild_id: int = 1, cached: bool = True) -> FakeChannel:
        channel = FakeChannel(channel_id, FakeGuild(guild_id))
        (self.cached if cached else self.remote)[channel_id] = channel
        return channel

    def get_channel(self, channel_id: int):
        return self.cached.get(channel_id)

    async def fetch_channel(self, channel_id: int):
        if channel_id in self.remote:
            return self.remote[channel_id]
        raise discord.NotFound(FakeResponse(), "Unknown Channel")

    def live_voice_clients(self) -> List[FakeVoiceClient]:
        channels = list(self.cached.values()) + list(self.remote.values())
        return [
            vc
            for ch in channels
            for vc in getattr(ch, "voice_clients", [])
            if vc.connected
        ]


# -----------------------------------------------------------------------------
# Transcoder fake
# -----------------------------------------------------------------------------

class FakeTranscoder:
    def __init__(self, event_bus: EventBus) -> None:
        self.event_bus = event_bus
        self.state = TranscodeState.NOT_STARTED
        self.generation: Optional[int] = None
        self.spawned: List[MediaSourceConfig] = []
        self.streams: List[io.BytesIO] = []
        self.kills = 0
        self.live = 0
        self.max_live = 0
        self.spawn_failures = 0

    @property
    def is_running(self) -> bool:
        return self.state == TranscodeState.RUNNING

    async def spawn(self, config: MediaSourceConfig, generation: int) -> io.BytesIO:
        if self.is_running:
            await self.kill()
        await asyncio.sleep(0)
        if self.spawn_failures:
            self.spawn_failures -= 1
            self.state = TranscodeState.EXITED_ERROR
            raise ProcessSpawnFailure("Cannot launch 'ffmpeg': not found")
        self.spawned.append(dataclasses.replace(config))
        self.generation = generation
        self.state = TranscodeState.RUNNING
        self.live += 1
        self.max_live = max(self.max_live, self.live)
        stream = io.BytesIO(b"")
        self.streams.append(stream)
        return stream

    async def kill(self) -> None:
        if self.is_running:
            self.state = TranscodeState.KILLED
            self.live -= 1
            self.kills += 1

    def simulate_exit(self, returncode: int = 1) -> None:
        assert self.is_running
        self.state = TranscodeState.EXITED_CLEAN if returncode == 0 else TranscodeState.EXITED_ERROR
        self.live -= 1
        self.event_bus.publish(
            TRANSCODER_EXITED,
            {
                "generation": self.generation,
                "returncode": returncode,
                "reason": f"code {returncode}",
                "clean": returncode == 0,
            },
        )


# -----------------------------------------------------------------------------
# Harness
# -----------------------------------------------------------------------------

@dataclass
class Harness:
    event_bus: EventBus
    client: FakeClient
    voice: VoiceSession
    transcoder: FakeTranscoder
    sink: PlaybackSink
    supervisor: StreamSupervisor
    states: List[str] = field(default_factory=list)

    def channel(self, channel_id: int) -> FakeChannel:
        return self.client.cached[channel_id]

    def assert_single_live(self) -> None:
        assert len(self.client.live_voice_clients()) <= 1
        assert self.transcoder.live <= 1
        assert self.transcoder.max_live <= 1


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def harness(event_bus: EventBus):
    client = FakeClient()
    client.add_voice_channel(111, guild_id=1)
    client.add_voice_channel(222, guild_id=2)

    voice = VoiceSession(
        client=client,
        event_bus=event_bus,
        connect_timeout=FAST_RECOVERY.connect_timeout,
        poll_interval=FAST_RECOVERY.voice_poll_interval,
    )
    transcoder = FakeTranscoder(event_bus)
    sink = PlaybackSink(event_bus=event_bus)
    supervisor = StreamSupervisor(
        event_bus=event_bus,
        voice=voice,
        transcoder=transcoder,
        sink=sink,
        source=MediaSourceConfig(url="https://example.test/live.mpd"),
        recovery=dataclasses.replace(FAST_RECOVERY),
    )
    h = Harness(event_bus, client, voice, transcoder, sink, supervisor)
    event_bus.subscribe("stream_state", lambda data: h.states.append(data["state"]))

    supervisor.launch()
    yield h
    await supervisor.shutdown()
