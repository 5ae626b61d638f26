"""
Playback sink feeding transcoder output into a Discord voice client.

This wrapper focuses on:
- Binding (and rebinding, on reconnect) the held stream to a voice client
- Volume control while playing
- Announcing playback_finished (idle or error) for the current binding only

The voice player reads sources on its own thread, so the Ogg pipe is read
synchronously there and completion callbacks arrive off-loop.
"""
from __future__ import annotations

import functools
import logging
import threading
from typing import Any, BinaryIO, Iterator, Optional

import discord
import numpy as np
from discord.oggparse import OggError, OggStream

from .errors import SinkPlaybackError
from .event_bus import PLAYBACK_FINISHED, EventBus
from .models import SinkState

_LOGGER = logging.getLogger(__name__)

# Ogg/Opus header packets carry no audio.
_OPUS_HEADER_MAGIC = (b"OpusHead", b"OpusTags")


def scale_pcm(pcm: bytes, volume: float) -> bytes:
    """Scales signed 16-bit PCM by volume, clipping instead of wrapping."""
    if volume == 1.0 or not pcm:
        return pcm
    samples = np.frombuffer(pcm, dtype=np.int16).astype(np.float32) * volume
    return np.clip(samples, -32768, 32767).astype(np.int16).tobytes()


class OggOpusPipeSource:
    """Yields raw Opus packets from an Ogg stream, skipping header packets."""

    def __init__(self, stream: BinaryIO) -> None:
        self._packets: Iterator[bytes] = OggStream(stream).iter_packets()
        # A rebind can briefly leave two player threads on the same pipe.
        self._lock = threading.Lock()

    def read(self) -> bytes:
        with self._lock:
            while True:
                try:
                    packet = next(self._packets, b"")
                except (OSError, ValueError):
                    # Pipe closed underneath us by a kill.
                    return b""
                except OggError:
                    # Writer died mid-page; the process exit drives recovery.
                    _LOGGER.debug("Playback: truncated Ogg page at end of stream")
                    return b""
                if packet.startswith(_OPUS_HEADER_MAGIC):
                    continue
                return packet


class VolumeAdjustedSource(discord.AudioSource):
    """Decodes Opus packets to PCM and applies a live volume."""

    def __init__(self, packets: OggOpusPipeSource, volume: float = 1.0) -> None:
        self._packets = packets
        self._decoder: Optional[discord.opus.Decoder] = None
        self.volume = volume

    def read(self) -> bytes:
        packet = self._packets.read()
        if not packet:
            return b""
        if self._decoder is None:
            self._decoder = discord.opus.Decoder()
        pcm = self._decoder.decode(packet, fec=False)
        return scale_pcm(pcm, self.volume)

    def is_opus(self) -> bool:
        return False

    def cleanup(self) -> None:
        # The transcoder owns the pipe; a rebind must not close it.
        pass


class PlaybackSink:
    """Plays the current transcoder stream on the bound voice client."""

    def __init__(self, *, event_bus: EventBus) -> None:
        self._event_bus = event_bus

        self._voice_client: Optional[Any] = None
        self._source: Optional[VolumeAdjustedSource] = None
        self._generation: Optional[int] = None
        self._state = SinkState.IDLE

        # Each vc.play() gets a token; callbacks for older tokens are ignored.
        self._binding = 0
        self._binding_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SinkState:
        return self._state

    @property
    def volume(self) -> Optional[float]:
        return self._source.volume if self._source is not None else None

    @property
    def voice_client(self) -> Optional[Any]:
        return self._voice_client

    @property
    def has_stream(self) -> bool:
        return self._source is not None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def attach(self, voice_client: Any) -> None:
        """Binds playback to voice_client and resumes any held stream."""
        if voice_client is self._voice_client and self._state == SinkState.PLAYING:
            return
        self._stop_player()
        self._voice_client = voice_client
        if self._source is not None:
            _LOGGER.info("Playback: rebinding held stream to new voice client")
            self._start()

    def detach(self) -> None:
        """Unbinds from the voice client, keeping the stream for a later attach."""
        self._stop_player()
        self._voice_client = None
        self._state = SinkState.PAUSED if self._source is not None else SinkState.IDLE

    def play(self, stream: BinaryIO, *, volume: float, generation: int) -> None:
        """Starts consuming an Ogg/Opus stream, replacing the previous one."""
        self._stop_player()
        self._source = VolumeAdjustedSource(OggOpusPipeSource(stream), volume)
        self._generation = generation
        if self._voice_client is not None:
            self._start()
        else:
            _LOGGER.debug("Playback: no voice client bound; holding stream")
            self._state = SinkState.PAUSED

    def stop(self) -> None:
        """Stops playback and forgets the stream. No event is published."""
        self._stop_player()
        self._source = None
        self._generation = None
        self._state = SinkState.IDLE

    def set_volume(self, volume: float) -> bool:
        """Sets the volume of the playing stream. Returns False if nothing plays."""
        if self._state != SinkState.PLAYING or self._source is None:
            return False
        self._source.volume = volume
        _LOGGER.info("Playback: volume -> %.2f", volume)
        return True

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _start(self) -> None:
        with self._binding_lock:
            self._binding += 1
            token = self._binding
            self._state = SinkState.PLAYING
        try:
            self._voice_client.play(self._source, after=functools.partial(self._on_after, token))
        except discord.DiscordException as err:
            _LOGGER.warning("Playback: voice client refused playback: %s", err)
            self._finish(token, SinkPlaybackError(str(err)))

    def _stop_player(self) -> None:
        with self._binding_lock:
            self._binding += 1
        vc = self._voice_client
        if vc is None:
            return
        try:
            if vc.is_playing() or vc.is_paused():
                vc.stop()
        except Exception:
            _LOGGER.debug("Playback: error stopping voice player", exc_info=True)

    def _on_after(self, token: int, error: Optional[Exception]) -> None:
        """Runs on the voice player thread when playback ends."""
        wrapped = SinkPlaybackError(str(error)) if error is not None else None
        if wrapped is not None:
            wrapped.__cause__ = error
        self._finish(token, wrapped)

    def _finish(self, token: int, error: Optional[SinkPlaybackError]) -> None:
        with self._binding_lock:
            if token != self._binding:
                _LOGGER.debug("Playback: ignoring completion of superseded binding %s", token)
                return
            self._state = SinkState.ERRORED if error is not None else SinkState.IDLE
            generation = self._generation

        if error is not None:
            _LOGGER.warning("Playback: player error: %s", error)
        else:
            _LOGGER.info("Playback: stream went idle")

        self._event_bus.publish(
            PLAYBACK_FINISHED,
            {"generation": generation, "error": error},
        )
