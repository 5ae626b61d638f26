"""Operator DM commands -> supervisor calls, one reply per command."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import InvalidVolume, NoTargetConfigured, StreamerError, UnknownCommand
from .models import MAX_VOLUME, MIN_VOLUME, SupervisorState
from .supervisor import StreamSupervisor

_LOGGER = logging.getLogger(__name__)

HELP_TEXT = (
    "Commands: setvc/switchvc <id>, setstream <url>, setcookie <cookie>, start, stop, "
    "restart, reconnect, volume <0-2>, status, info, help"
)
UNKNOWN_TEXT = "Unknown command. Type `help`"
NO_TARGET_TEXT = "Use `setvc <id>` first"
VOLUME_USAGE = f"Usage: volume <{MIN_VOLUME:.1f}-{MAX_VOLUME:.1f}>"


def is_authorized(message: Any, owner_id: Optional[int]) -> bool:
    """Only direct messages from the owner are commands."""
    if owner_id is None:
        return False
    if getattr(message, "guild", None) is not None:
        return False
    return getattr(message.author, "id", None) == owner_id


class CommandRouter:
    """Parses operator text and drives the supervisor."""

    def __init__(self, supervisor: StreamSupervisor, *, owner_id: Optional[int] = None) -> None:
        self._supervisor = supervisor
        self._owner_id = owner_id
        self._handlers: Dict[str, Callable[[List[str], str], Awaitable[str]]] = {
            "setvc": self._cmd_setvc,
            "switchvc": self._cmd_setvc,
            "setstream": self._cmd_setstream,
            "setcookie": self._cmd_setcookie,
            "start": self._cmd_start,
            "stop": self._cmd_stop,
            "restart": self._cmd_restart,
            "reconnect": self._cmd_reconnect,
            "volume": self._cmd_volume,
            "status": self._cmd_status,
            "info": self._cmd_info,
            "help": self._cmd_help,
        }

    async def handle(self, text: str) -> str:
        """Runs one command and returns the reply text."""
        parts = text.strip().split(None, 1)
        verb = parts[0].lower() if parts else ""
        rest = parts[1] if len(parts) > 1 else ""
        args = rest.split()

        _LOGGER.debug("Command: %s %r", verb, args)
        try:
            handler = self._handlers.get(verb)
            if handler is None:
                raise UnknownCommand(verb)
            return await handler(args, rest)
        except UnknownCommand:
            return UNKNOWN_TEXT
        except NoTargetConfigured:
            return NO_TARGET_TEXT
        except InvalidVolume:
            return VOLUME_USAGE
        except StreamerError as err:
            _LOGGER.warning("Command %s failed: %s", verb, err)
            return f"Error: {err}"
        except Exception:
            _LOGGER.exception("Command %s crashed", verb)
            return f"Command `{verb}` failed; see logs"

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _cmd_setvc(self, args: List[str], _rest: str) -> str:
        try:
            channel_id = int(args[0])
        except (IndexError, ValueError):
            return "Usage: setvc <channelId>"
        await self._supervisor.set_target(channel_id)
        return f"VC set to {channel_id}"

    async def _cmd_setstream(self, args: List[str], _rest: str) -> str:
        if not args:
            return "Usage: setstream <url>"
        await self._supervisor.set_source(url=args[0])
        return f"Stream URL set to {args[0]}"

    async def _cmd_setcookie(self, _args: List[str], rest: str) -> str:
        # The header value may contain spaces; keep it verbatim.
        cookie = rest.strip()
        await self._supervisor.set_source(auth_header=cookie)
        return "Cookie updated" if cookie else "Cookie cleared"

    async def _cmd_start(self, _args: List[str], _rest: str) -> str:
        state = await self._supervisor.start()
        if state == SupervisorState.STREAMING:
            return "Streaming started"
        return self._retrying_text("Voice connect failed")

    async def _cmd_stop(self, _args: List[str], _rest: str) -> str:
        await self._supervisor.stop()
        return "Streaming stopped"

    async def _cmd_restart(self, _args: List[str], _rest: str) -> str:
        state = await self._supervisor.restart()
        if state == SupervisorState.STREAMING:
            return "Stream restarted"
        if self._supervisor.desired == SupervisorState.STOPPED:
            return "Restart cancelled by stop"
        return self._retrying_text("Restart could not reach voice")

    async def _cmd_reconnect(self, _args: List[str], _rest: str) -> str:
        if self._supervisor.desired != SupervisorState.STREAMING:
            if self._supervisor.target is None:
                return NO_TARGET_TEXT
            return "Not streaming; use `start`"
        if await self._supervisor.reconnect_only():
            return "Voice reconnected"
        return self._retrying_text("Voice reconnect failed")

    async def _cmd_volume(self, args: List[str], _rest: str) -> str:
        if not args:
            return VOLUME_USAGE
        if await self._supervisor.set_volume(args[0]):
            return f"Volume set to {self._supervisor.source.volume:g}"
        return "Nothing is playing; volume unchanged"

    async def _cmd_status(self, _args: List[str], _rest: str) -> str:
        status = self._supervisor.status()
        return "\n".join(
            [
                f"VC: {status.channel_id if status.channel_id is not None else 'none'}",
                f"Streaming: {str(status.streaming).lower()}",
                f"State: {status.state.value}",
                f"Player: {status.sink_state.value}",
                f"Connection: {status.voice_state.value}",
                f"Transcoder: {status.process_state.value}",
            ]
        )

    async def _cmd_info(self, _args: List[str], _rest: str) -> str:
        source = self._supervisor.source
        recovery = self._supervisor.recovery
        return "\n".join(
            [
                f"Owner: {self._owner_id}",
                f"Stream: {source.url}",
                f"Cookie: {'set' if source.has_auth_header else 'none'}",
                f"Volume: {source.volume:g}",
                f"Reconnect interval: {recovery.reconnect_interval:g}s",
                f"Respawn delay: {recovery.respawn_delay:g}s",
            ]
        )

    async def _cmd_help(self, _args: List[str], _rest: str) -> str:
        return HELP_TEXT

    def _retrying_text(self, what: str) -> str:
        interval = self._supervisor.recovery.reconnect_interval
        return f"{what}; retrying every {interval:g}s (see `status`)"
