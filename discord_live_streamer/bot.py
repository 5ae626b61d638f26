"""Discord client: wires the pipeline together and serves owner DMs."""

from __future__ import annotations

import logging
from typing import Optional

import discord

from .commands import CommandRouter, is_authorized
from .config import Config
from .errors import AuthenticationFailure, NoTargetConfigured
from .event_bus import EventBus
from .models import MediaSourceConfig, TargetChannel
from .playback import PlaybackSink
from .supervisor import StreamSupervisor
from .transcoder import TranscodeProcess
from .voice_session import VoiceSession

_LOGGER = logging.getLogger(__name__)


class StreamerBot(discord.Client):
    """Owner-controlled 24/7 voice streamer."""

    def __init__(self, *, config: Config, event_bus: EventBus) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.voice_states = True
        intents.dm_messages = True
        super().__init__(intents=intents)

        self.config = config
        self.event_bus = event_bus
        self._autostarted = False

        self.voice = VoiceSession(
            client=self,
            event_bus=event_bus,
            connect_timeout=config.recovery.connect_timeout,
            poll_interval=config.recovery.voice_poll_interval,
            self_deaf=config.voice.self_deaf,
        )
        self.transcoder = TranscodeProcess(
            event_bus=event_bus,
            ffmpeg_path=config.transcoder.ffmpeg_path,
        )
        self.sink = PlaybackSink(event_bus=event_bus)

        target: Optional[TargetChannel] = None
        if config.stream.channel_id is not None:
            target = TargetChannel(channel_id=config.stream.channel_id)

        self.supervisor = StreamSupervisor(
            event_bus=event_bus,
            voice=self.voice,
            transcoder=self.transcoder,
            sink=self.sink,
            source=MediaSourceConfig(
                url=config.stream.url,
                auth_header=config.stream.cookie or None,
                volume=config.stream.volume,
            ),
            recovery=config.recovery,
            target=target,
        )
        self.router = CommandRouter(self.supervisor, owner_id=config.discord.owner_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def serve(self, token: str) -> None:
        """Logs in and runs until close()."""
        try:
            await self.login(token)
        except discord.LoginFailure as err:
            raise AuthenticationFailure(str(err)) from err
        await self.connect()

    async def setup_hook(self) -> None:
        self.supervisor.launch()

    async def close(self) -> None:
        _LOGGER.info("Shutting down streamer")
        try:
            await self.supervisor.shutdown()
        finally:
            await super().close()

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def on_ready(self) -> None:
        _LOGGER.info("Streamer online as %s (owner=%s)", self.user, self.config.discord.owner_id)
        if self.config.discord.owner_id is None:
            _LOGGER.warning("No owner_id configured; all DM commands will be ignored")

        if self.config.stream.autostart and not self._autostarted:
            self._autostarted = True
            try:
                state = await self.supervisor.start()
                _LOGGER.info("Autostart: %s", state.value)
            except NoTargetConfigured:
                _LOGGER.warning("Autostart requested but no channel_id configured")

    async def on_message(self, message: discord.Message) -> None:
        if self.user is not None and message.author.id == self.user.id:
            return
        if not is_authorized(message, self.config.discord.owner_id):
            return

        reply = await self.router.handle(message.content)
        try:
            await message.reply(reply)
        except discord.HTTPException:
            _LOGGER.warning("Failed to send reply to owner", exc_info=True)
