"""
Stream supervisor.

Owns the voice session, the transcoder and the playback sink as one unit:

- Operator commands (start/stop/restart/reconnect/set_target/set_source)
  run as compound operations under a single asyncio.Lock
- Component failures arrive as EventBus events, are marshalled onto one
  control queue and turned into recovery tasks:
    transcoder exit / sink idle -> respawn after respawn_delay
    sink error                  -> full restart
    voice drop                  -> wait for library reconnect, else destroy
                                   and reconnect every reconnect_interval
- Every recovery re-checks the desired state and the pipeline generation
  after each suspension point, so it acts on the latest config and stands
  down when a newer operation has superseded it
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Set

from .config import RecoveryConfig
from .errors import NoTargetConfigured, ProcessSpawnFailure, VoiceSessionError
from .event_bus import STREAM_STATE, EventBus, EventHandler, subscribe
from .models import (
    MediaSourceConfig,
    SupervisorState,
    SupervisorStatus,
    TargetChannel,
    validate_volume,
)
from .playback import PlaybackSink
from .transcoder import TranscodeProcess
from .voice_session import VoiceSession

_LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Control-loop events
# ---------------------------------------------------------------------------

class _EventKind(Enum):
    PROCESS_EXITED = "process_exited"
    SINK_IDLE = "sink_idle"
    SINK_ERROR = "sink_error"
    VOICE_DISCONNECTED = "voice_disconnected"


@dataclass
class _Event:
    kind: _EventKind
    generation: Optional[int]
    detail: Dict[str, Any] = field(default_factory=dict)


class _PipelineEventHandler(EventHandler):
    """Forwards component events (from any thread) to the supervisor queue."""

    def __init__(self, event_bus: EventBus, supervisor: "StreamSupervisor") -> None:
        self._supervisor = supervisor
        super().__init__(event_bus)

    @subscribe
    def transcoder_exited(self, data: dict) -> None:
        self._supervisor._post(_Event(_EventKind.PROCESS_EXITED, data.get("generation"), data))

    @subscribe
    def playback_finished(self, data: dict) -> None:
        kind = _EventKind.SINK_ERROR if data.get("error") is not None else _EventKind.SINK_IDLE
        self._supervisor._post(_Event(kind, data.get("generation"), data))

    @subscribe
    def voice_disconnected(self, data: dict) -> None:
        self._supervisor._post(_Event(_EventKind.VOICE_DISCONNECTED, data.get("generation"), data))


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------

class StreamSupervisor:
    """Keeps one live stream playing into one voice channel."""

    def __init__(
        self,
        *,
        event_bus: EventBus,
        voice: VoiceSession,
        transcoder: TranscodeProcess,
        sink: PlaybackSink,
        source: MediaSourceConfig,
        recovery: Optional[RecoveryConfig] = None,
        target: Optional[TargetChannel] = None,
    ) -> None:
        self._event_bus = event_bus
        self._voice = voice
        self._transcoder = transcoder
        self._sink = sink
        self._source = source
        self._recovery = recovery or RecoveryConfig()
        self._target = target

        self._state = SupervisorState.STOPPED
        # What the operator asked for; recoveries stand down unless STREAMING.
        self._desired = SupervisorState.STOPPED
        self._lock = asyncio.Lock()

        # Bumped whenever the process/sink pair is replaced or torn down.
        self._pipeline_gen = 0
        self._respawn_scheduled: Optional[int] = None
        self._pending_restart: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: "asyncio.Queue[_Event]" = asyncio.Queue()
        self._control_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._handler = _PipelineEventHandler(event_bus, self)

    # ---------------------------------------------------------------------
    # Properties
    # ---------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def desired(self) -> SupervisorState:
        return self._desired

    @property
    def target(self) -> Optional[TargetChannel]:
        return self._target

    @property
    def source(self) -> MediaSourceConfig:
        return self._source

    @property
    def recovery(self) -> RecoveryConfig:
        return self._recovery

    # ---------------------------------------------------------------------
    # Control loop lifecycle
    # ---------------------------------------------------------------------

    def launch(self) -> None:
        """Starts the control loop on the running event loop."""
        if self._control_task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._control_task = self._loop.create_task(self._control_loop())

    async def shutdown(self) -> None:
        """Stops streaming and cancels all background work."""
        await self.stop()
        self._handler.unsubscribe_all()

        tasks = [t for t in self._tasks if not t.done()]
        if self._control_task is not None:
            tasks.append(self._control_task)
            self._control_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Waits until queued events and the recovery work they started finish."""
        while True:
            # Let call_soon_threadsafe deliveries land in the queue.
            await asyncio.sleep(0)
            await self._events.join()
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                if self._events.empty():
                    return
                continue
            await asyncio.wait(pending)

    # ---------------------------------------------------------------------
    # Operator commands
    # ---------------------------------------------------------------------

    async def set_target(self, channel_id: int) -> None:
        """Stores the voice channel; a live stream moves over to it."""
        self._target = TargetChannel(channel_id=channel_id)
        _LOGGER.info("Supervisor: target channel -> %s", channel_id)
        if self._desired == SupervisorState.STREAMING:
            self._request_restart("voice channel changed")

    async def set_source(self, *, url: Optional[str] = None, auth_header: Optional[str] = None) -> None:
        """Merges into the source config; a live stream restarts on it."""
        self._source.merge(url=url, auth_header=auth_header)
        _LOGGER.info(
            "Supervisor: source -> %s (cookie=%s)",
            self._source.url,
            "set" if self._source.has_auth_header else "none",
        )
        if self._desired == SupervisorState.STREAMING:
            self._request_restart("source changed")

    async def start(self) -> SupervisorState:
        if self._target is None:
            raise NoTargetConfigured()

        self._desired = SupervisorState.STREAMING
        async with self._lock:
            if self._desired != SupervisorState.STREAMING:
                _LOGGER.debug("Supervisor: start superseded by a later stop")
                return self._state
            if self._state in (SupervisorState.STREAMING, SupervisorState.RECONNECTING):
                _LOGGER.info("Supervisor: already %s", self._state.value)
                return self._state

            self._set_state(SupervisorState.CONNECTING)
            await self._bring_up()
            return self._state

    async def stop(self) -> SupervisorState:
        """Tears everything down. Idempotent, safe from any state."""
        self._desired = SupervisorState.STOPPED
        async with self._lock:
            await self._teardown()
            self._set_state(SupervisorState.STOPPED)
            return self._state

    async def restart(self) -> SupervisorState:
        """Full teardown and rebuild. Concurrent requests coalesce."""
        if self._target is None:
            raise NoTargetConfigured()
        self._desired = SupervisorState.STREAMING
        task = self._request_restart("operator request")
        await asyncio.shield(task)
        return self._state

    async def reconnect_only(self) -> bool:
        """Re-establishes the voice session, keeping the transcoder running."""
        if self._target is None:
            raise NoTargetConfigured()
        if self._desired != SupervisorState.STREAMING:
            return False

        async with self._lock:
            if self._desired != SupervisorState.STREAMING:
                return False
            _LOGGER.info("Supervisor: operator requested voice reconnect")
            self._set_state(SupervisorState.RECONNECTING)
            self._sink.detach()
            try:
                await self._voice.connect(self._target)
            except VoiceSessionError as err:
                _LOGGER.warning(
                    "Supervisor: %s; retrying in %.0fs", err, self._recovery.reconnect_interval
                )
                self._ensure_reconnect_loop()
                return False
            await self._resume_pipeline()
            return True

    async def set_volume(self, volume: Any) -> bool:
        """Applies volume to the playing stream. False if nothing is playing."""
        value = validate_volume(volume)
        if not self._sink.set_volume(value):
            return False
        self._source.volume = value
        return True

    def status(self) -> SupervisorStatus:
        target = self._target
        return SupervisorStatus(
            state=self._state,
            channel_id=target.channel_id if target else None,
            guild_id=target.guild_id if target else None,
            url=self._source.url,
            cookie_set=self._source.has_auth_header,
            volume=self._source.volume,
            voice_state=self._voice.state,
            process_state=self._transcoder.state,
            sink_state=self._sink.state,
        )

    # ---------------------------------------------------------------------
    # Compound steps (caller holds the lock)
    # ---------------------------------------------------------------------

    async def _bring_up(self) -> bool:
        try:
            await self._voice.connect(self._target)
        except VoiceSessionError as err:
            _LOGGER.warning(
                "Supervisor: %s; retrying in %.0fs", err, self._recovery.reconnect_interval
            )
            self._set_state(SupervisorState.RECONNECTING)
            self._ensure_reconnect_loop()
            return False

        await self._spawn_and_play()
        self._set_state(SupervisorState.STREAMING)
        return True

    async def _spawn_and_play(self) -> None:
        self._pipeline_gen += 1
        generation = self._pipeline_gen
        self._respawn_scheduled = None

        self._sink.stop()
        self._bind_sink()

        try:
            stream = await self._transcoder.spawn(self._source, generation)
        except ProcessSpawnFailure as err:
            _LOGGER.error(
                "Supervisor: %s; retrying in %.1fs", err, self._recovery.respawn_delay
            )
            self._post(_Event(_EventKind.PROCESS_EXITED, generation, {"reason": str(err)}))
            return

        self._sink.play(stream, volume=self._source.volume, generation=generation)

    async def _resume_pipeline(self) -> None:
        """After a voice-only reconnect: rebind the live stream or rebuild it."""
        if self._transcoder.is_running and self._sink.has_stream:
            self._bind_sink()
        else:
            await self._spawn_and_play()
        self._set_state(SupervisorState.STREAMING)

    async def _teardown(self) -> None:
        self._pipeline_gen += 1
        self._respawn_scheduled = None
        self._sink.stop()
        await self._transcoder.kill()
        self._sink.detach()
        await self._voice.destroy()

    def _bind_sink(self) -> None:
        vc = self._voice.voice_client if self._voice.is_connected else None
        if vc is None:
            if self._sink.voice_client is not None:
                self._sink.detach()
        elif self._sink.voice_client is not vc:
            self._sink.attach(vc)

    # ---------------------------------------------------------------------
    # Recovery tasks
    # ---------------------------------------------------------------------

    def _request_restart(self, reason: str) -> asyncio.Task:
        pending = self._pending_restart
        if pending is not None and not pending.done():
            _LOGGER.debug("Supervisor: restart already queued; coalescing (%s)", reason)
            return pending
        task = self._spawn(self._restart(reason))
        self._pending_restart = task
        return task

    async def _restart(self, reason: str) -> None:
        async with self._lock:
            if self._pending_restart is asyncio.current_task():
                # Requests from here on need a fresh restart.
                self._pending_restart = None
            if self._desired != SupervisorState.STREAMING:
                _LOGGER.debug("Supervisor: restart (%s) dropped; not streaming", reason)
                return
            _LOGGER.info("Supervisor: restarting (%s)", reason)
            self._set_state(SupervisorState.RESTARTING)
            await self._teardown()
            await self._bring_up()

    async def _respawn(self, generation: int, reason: str) -> None:
        _LOGGER.warning(
            "Supervisor: %s; respawning transcoder in %.1fs", reason, self._recovery.respawn_delay
        )
        await asyncio.sleep(self._recovery.respawn_delay)
        async with self._lock:
            if self._respawn_scheduled == generation:
                self._respawn_scheduled = None
            if self._desired != SupervisorState.STREAMING or generation != self._pipeline_gen:
                _LOGGER.debug("Supervisor: respawn for generation %s superseded", generation)
                return
            _LOGGER.info("Supervisor: respawning transcoder")
            await self._spawn_and_play()

    async def _recover_voice(self, session_gen: int) -> None:
        timeout = self._recovery.voice_recovery_timeout
        if self._state in (SupervisorState.STREAMING, SupervisorState.CONNECTING):
            self._set_state(SupervisorState.RECONNECTING)
        _LOGGER.warning("Supervisor: voice disconnected; waiting up to %.0fs for it to recover", timeout)

        if await self._voice.wait_until_connected(timeout):
            if (
                self._voice.generation == session_gen
                and self._desired == SupervisorState.STREAMING
                and self._state == SupervisorState.RECONNECTING
            ):
                self._set_state(SupervisorState.STREAMING)
            _LOGGER.info("Supervisor: voice recovered on its own")
            return

        async with self._lock:
            if self._desired != SupervisorState.STREAMING or self._voice.generation != session_gen:
                _LOGGER.debug("Supervisor: voice recovery superseded")
                return
            _LOGGER.warning(
                "Supervisor: voice did not recover within %.0fs; reconnecting in %.0fs",
                timeout,
                self._recovery.reconnect_interval,
            )
            self._sink.detach()
            await self._voice.destroy()
            self._set_state(SupervisorState.RECONNECTING)
            self._ensure_reconnect_loop()

    def _ensure_reconnect_loop(self) -> None:
        task = self._reconnect_task
        if task is not None and not task.done():
            return
        self._reconnect_task = self._spawn(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while self._desired == SupervisorState.STREAMING:
            await asyncio.sleep(self._recovery.reconnect_interval)
            async with self._lock:
                if self._desired != SupervisorState.STREAMING:
                    break
                if self._voice.is_connected:
                    _LOGGER.debug("Supervisor: voice already reconnected; leaving retry loop")
                    return

                attempt += 1
                _LOGGER.info("Supervisor: voice reconnect attempt %d", attempt)
                self._set_state(SupervisorState.RECONNECTING)
                try:
                    await self._voice.connect(self._target)
                except VoiceSessionError as err:
                    _LOGGER.warning(
                        "Supervisor: %s; retrying in %.0fs", err, self._recovery.reconnect_interval
                    )
                    continue
                await self._resume_pipeline()
                return
        _LOGGER.debug("Supervisor: reconnect loop exiting (stopped)")

    # ---------------------------------------------------------------------
    # Event plumbing
    # ---------------------------------------------------------------------

    def _post(self, event: _Event) -> None:
        """Queues an event from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            _LOGGER.debug("Supervisor: dropping %s; control loop not running", event.kind.value)
            return
        loop.call_soon_threadsafe(self._events.put_nowait, event)

    async def _control_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                self._dispatch(event)
            except Exception:
                _LOGGER.exception("Supervisor: error handling %s", event.kind.value)
            finally:
                self._events.task_done()

    def _dispatch(self, event: _Event) -> None:
        if self._desired != SupervisorState.STREAMING:
            _LOGGER.debug("Supervisor: ignoring %s while stopped", event.kind.value)
            return

        if event.kind == _EventKind.VOICE_DISCONNECTED:
            if event.generation != self._voice.generation:
                _LOGGER.debug("Supervisor: ignoring disconnect of a replaced voice session")
                return
            self._spawn(self._recover_voice(event.generation))
            return

        if event.generation != self._pipeline_gen:
            _LOGGER.debug(
                "Supervisor: ignoring %s of stale generation %s (current %s)",
                event.kind.value,
                event.generation,
                self._pipeline_gen,
            )
            return

        if event.kind == _EventKind.SINK_ERROR:
            _LOGGER.warning("Supervisor: playback error (%s); restarting", event.detail.get("error"))
            self._request_restart("playback error")
            return

        if self._respawn_scheduled == event.generation:
            _LOGGER.debug("Supervisor: respawn already scheduled for generation %s", event.generation)
            return
        self._respawn_scheduled = event.generation
        if event.kind == _EventKind.PROCESS_EXITED:
            reason = f"transcoder exited ({event.detail.get('reason', 'unknown')})"
        else:
            reason = "playback went idle"
        self._spawn(self._respawn(event.generation, reason))

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error("Supervisor: background task failed", exc_info=exc)

    def _set_state(self, state: SupervisorState) -> None:
        previous = self._state
        if state == previous:
            return
        self._state = state
        _LOGGER.info("Supervisor: %s -> %s", previous.value, state.value)
        self._event_bus.publish(STREAM_STATE, {"state": state.value, "previous": previous.value})
