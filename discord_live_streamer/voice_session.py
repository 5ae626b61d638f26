"""
Voice session: one discord.py voice client at a time.

- connect() resolves the channel, tears down any previous client (ours or a
  stray one left in the guild) and waits for the new one to be ready
- A watcher polls the client and publishes voice_disconnected when the
  connection drops, then flips back to connected if discord.py's own
  reconnect succeeds
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import discord

from .errors import ChannelNotFound, ConnectTimeout, VoiceSessionError
from .event_bus import VOICE_DISCONNECTED, EventBus
from .models import TargetChannel, VoiceSessionState

_LOGGER = logging.getLogger(__name__)


class VoiceSession:
    """Owns the single voice connection."""

    def __init__(
        self,
        *,
        client: Any,
        event_bus: EventBus,
        connect_timeout: float = 20.0,
        poll_interval: float = 1.0,
        self_deaf: bool = False,
    ) -> None:
        self._client = client
        self._event_bus = event_bus
        self._connect_timeout = connect_timeout
        self._poll_interval = poll_interval
        self._self_deaf = self_deaf

        self._voice_client: Optional[Any] = None
        self._channel_id: Optional[int] = None
        self._state = VoiceSessionState.DISCONNECTED

        # Bumped on every connect/destroy; stale watchers exit on mismatch.
        self._generation = 0
        self._watch_task: Optional[asyncio.Task] = None
        self._connected_event = asyncio.Event()

    # ---------------------------------------------------------------------
    # Properties
    # ---------------------------------------------------------------------

    @property
    def state(self) -> VoiceSessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def voice_client(self) -> Optional[Any]:
        return self._voice_client

    @property
    def is_connected(self) -> bool:
        vc = self._voice_client
        return vc is not None and vc.is_connected()

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    async def resolve(self, target: TargetChannel) -> Any:
        """Looks the channel up in the cache, then over the API."""
        channel_id = target.channel_id
        channel = self._client.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self._client.fetch_channel(channel_id)
            except discord.NotFound:
                raise ChannelNotFound(channel_id) from None
            except discord.Forbidden:
                raise ChannelNotFound(channel_id, "is not accessible") from None
            except (discord.HTTPException, discord.InvalidData) as err:
                raise ChannelNotFound(channel_id, f"lookup failed ({err})") from err

        guild = getattr(channel, "guild", None)
        if guild is None or not hasattr(channel, "connect"):
            raise ChannelNotFound(channel_id, "is not a voice channel")

        target.guild_id = guild.id
        return channel

    async def connect(self, target: TargetChannel) -> Any:
        """Opens a fresh session on target, replacing any existing one."""
        channel = await self.resolve(target)

        await self.destroy()
        stray = getattr(channel.guild, "voice_client", None)
        if stray is not None:
            _LOGGER.info("Voice: disconnecting stray voice client in guild %s", channel.guild.id)
            await stray.disconnect(force=True)

        self._generation += 1
        generation = self._generation
        self._channel_id = target.channel_id
        self._set_state(VoiceSessionState.CONNECTING)
        _LOGGER.info("Voice: connecting to %s (guild %s)", target.channel_id, target.guild_id)

        try:
            vc = await channel.connect(
                timeout=self._connect_timeout,
                reconnect=True,
                self_deaf=self._self_deaf,
            )
        except asyncio.TimeoutError:
            self._set_state(VoiceSessionState.DISCONNECTED)
            raise ConnectTimeout(target.channel_id, self._connect_timeout) from None
        except discord.DiscordException as err:
            self._set_state(VoiceSessionState.DISCONNECTED)
            raise VoiceSessionError(f"Voice connect to {target.channel_id} failed: {err}") from err

        self._voice_client = vc
        self._set_state(VoiceSessionState.CONNECTED)
        self._connected_event.set()
        self._watch_task = asyncio.get_running_loop().create_task(
            self._watch_loop(vc, generation)
        )
        _LOGGER.info("Voice: connected to %s", target.channel_id)
        return vc

    async def destroy(self) -> None:
        """Disconnects the current client. Idempotent."""
        self._generation += 1
        self._connected_event.clear()

        task = self._watch_task
        self._watch_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        vc = self._voice_client
        self._voice_client = None
        if vc is None:
            return

        _LOGGER.info("Voice: destroying session for %s", self._channel_id)
        try:
            await vc.disconnect(force=True)
        except Exception:
            _LOGGER.debug("Voice: error during disconnect", exc_info=True)
        self._set_state(VoiceSessionState.DESTROYED)

    async def wait_until_connected(self, timeout: float) -> bool:
        """Waits for discord.py's own reconnect. False on timeout."""
        if self.is_connected and self._state == VoiceSessionState.CONNECTED:
            return True
        if self._voice_client is not None:
            self._set_state(VoiceSessionState.RECONNECTING)
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            if self._voice_client is not None:
                self._set_state(VoiceSessionState.DISCONNECTED)
            return False
        return True

    # ---------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------

    def _set_state(self, state: VoiceSessionState) -> None:
        if state != self._state:
            _LOGGER.debug("Voice: state %s -> %s", self._state.value, state.value)
            self._state = state

    async def _watch_loop(self, vc: Any, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(self._poll_interval)
            if generation != self._generation:
                return

            connected = vc.is_connected()
            if not connected and self._connected_event.is_set():
                self._connected_event.clear()
                self._set_state(VoiceSessionState.DISCONNECTED)
                _LOGGER.warning("Voice: connection to %s dropped", self._channel_id)
                self._event_bus.publish(
                    VOICE_DISCONNECTED,
                    {"generation": generation, "channel_id": self._channel_id},
                )
            elif connected and not self._connected_event.is_set():
                self._set_state(VoiceSessionState.CONNECTED)
                self._connected_event.set()
                _LOGGER.info("Voice: connection to %s restored by library", self._channel_id)
