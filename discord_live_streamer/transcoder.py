"""
ffmpeg transcoder subprocess.

- Builds the ffmpeg invocation for the configured source (read at native
  rate, optional Cookie header, Ogg/Opus on stdout)
- Owns exactly one live process; spawning over a live one SIGKILLs it first
- stdout is an OS pipe handed to the playback sink as a blocking file,
  since the voice player reads it from its own thread
- Watches the process and publishes transcoder_exited on unexpected exit
- Keeps an stderr tail for post-mortem logging
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from typing import BinaryIO, Deque, List, Optional

from .errors import ProcessSpawnFailure
from .event_bus import TRANSCODER_EXITED, EventBus
from .models import MediaSourceConfig, TranscodeState

_LOGGER = logging.getLogger(__name__)

# Fixed output encoding: 48 kHz stereo Opus in an Ogg container on stdout,
# which is what the voice player consumes without re-encoding.
_OUTPUT_ARGS = (
    "-analyzeduration", "0",
    "-loglevel", "0",
    "-acodec", "libopus",
    "-f", "opus",
    "-ar", "48000",
    "-ac", "2",
    "pipe:1",
)


def build_ffmpeg_command(ffmpeg_path: str, config: MediaSourceConfig) -> List[str]:
    """Returns the full ffmpeg argument list for a source."""
    cmd = [ffmpeg_path, "-re"]
    if config.auth_header:
        cmd += ["-headers", f"Cookie: {config.auth_header}"]
    cmd += ["-i", config.url]
    cmd += list(_OUTPUT_ARGS)
    return cmd


def describe_returncode(returncode: Optional[int]) -> str:
    if returncode is None:
        return "running"
    if returncode < 0:
        try:
            return signal.Signals(-returncode).name
        except ValueError:
            return f"signal {-returncode}"
    return f"code {returncode}"


class TranscodeProcess:
    """Owns the ffmpeg subprocess feeding the playback sink."""

    def __init__(self, *, event_bus: EventBus, ffmpeg_path: str = "ffmpeg") -> None:
        self._event_bus = event_bus
        self._ffmpeg_path = ffmpeg_path

        self._state = TranscodeState.NOT_STARTED
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stdout: Optional[BinaryIO] = None
        self._generation: Optional[int] = None

        self._wait_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None

        # ffmpeg stderr tail buffer (for post-mortem)
        self._stderr_tail: Deque[str] = deque(maxlen=40)

    # ---------------------------------------------------------------------
    # Properties
    # ---------------------------------------------------------------------

    @property
    def state(self) -> TranscodeState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == TranscodeState.RUNNING

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def generation(self) -> Optional[int]:
        return self._generation

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    async def spawn(self, config: MediaSourceConfig, generation: int) -> BinaryIO:
        """Launches ffmpeg for config and returns its stdout.

        Any live instance is killed first.
        """
        if self._proc is not None:
            if self.is_running:
                _LOGGER.info("Transcoder: killing live ffmpeg (pid=%s) before respawn", self.pid)
            await self.kill()

        cmd = build_ffmpeg_command(self._ffmpeg_path, config)
        _LOGGER.info(
            "Transcoder: starting ffmpeg (url=%s cookie=%s generation=%s)",
            config.url,
            "set" if config.auth_header else "none",
            generation,
        )

        self._stderr_tail.clear()

        read_fd, write_fd = os.pipe()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=write_fd,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            os.close(read_fd)
            self._state = TranscodeState.EXITED_ERROR
            raise ProcessSpawnFailure(f"Cannot launch {self._ffmpeg_path!r}: {err}") from err
        finally:
            # The child holds its own copy; EOF must follow the child's death.
            os.close(write_fd)

        self._proc = proc
        self._stdout = os.fdopen(read_fd, "rb")
        self._generation = generation
        self._state = TranscodeState.RUNNING

        loop = asyncio.get_running_loop()
        self._wait_task = loop.create_task(self._waiter_loop(proc, generation))
        self._stderr_task = loop.create_task(self._stderr_loop(proc))

        _LOGGER.debug("Transcoder: ffmpeg running (pid=%s)", proc.pid)
        return self._stdout

    async def kill(self) -> None:
        """SIGKILLs the live process and waits until it is reaped.

        Safe to call when nothing is running.
        """
        proc = self._proc
        if proc is None:
            return

        if proc.returncode is None:
            self._state = TranscodeState.KILLED
            _LOGGER.info("Transcoder: killing ffmpeg (pid=%s)", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

        for task in (self._wait_task, self._stderr_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._wait_task = None
        self._stderr_task = None

        stdout = self._stdout
        self._stdout = None
        if stdout is not None:
            try:
                stdout.close()
            except OSError:
                _LOGGER.debug("Transcoder: error closing stdout pipe", exc_info=True)

        self._proc = None

    # ---------------------------------------------------------------------
    # Loops
    # ---------------------------------------------------------------------

    async def _waiter_loop(self, proc: asyncio.subprocess.Process, generation: int) -> None:
        """Watches ffmpeg for exit that nobody asked for."""
        rc = await proc.wait()

        if self._proc is not proc or self._state == TranscodeState.KILLED:
            _LOGGER.debug("Transcoder: ffmpeg exited (%s) after kill", describe_returncode(rc))
            return

        clean = rc == 0
        self._state = TranscodeState.EXITED_CLEAN if clean else TranscodeState.EXITED_ERROR
        if clean:
            _LOGGER.warning("Transcoder: ffmpeg exited cleanly (source ended)")
        else:
            _LOGGER.warning(
                "Transcoder: ffmpeg exited with error (%s). stderr_tail=%r",
                describe_returncode(rc),
                list(self._stderr_tail),
            )

        self._event_bus.publish(
            TRANSCODER_EXITED,
            {
                "generation": generation,
                "returncode": rc,
                "reason": describe_returncode(rc),
                "clean": clean,
            },
        )

    async def _stderr_loop(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        try:
            while True:
                line = await proc.stderr.readline()
                if not line:
                    return
                s = line.decode("utf-8", errors="replace").rstrip()
                self._stderr_tail.append(s)
                _LOGGER.debug("ffmpeg: %s", s)
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.debug("Transcoder: stderr loop error", exc_info=True)
