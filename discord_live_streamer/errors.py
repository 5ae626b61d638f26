"""Error taxonomy for the streamer."""


class StreamerError(Exception):
    """Base class for all streamer errors."""


class NoTargetConfigured(StreamerError):
    """Raised when streaming is requested before a voice channel is set."""

    def __init__(self) -> None:
        super().__init__("No voice channel configured")


class VoiceSessionError(StreamerError):
    """Voice session could not be established."""


class ChannelNotFound(VoiceSessionError):
    def __init__(self, channel_id: int, reason: str = "not found") -> None:
        super().__init__(f"Voice channel {channel_id} {reason}")
        self.channel_id = channel_id


class ConnectTimeout(VoiceSessionError):
    def __init__(self, channel_id: int, timeout: float) -> None:
        super().__init__(f"Voice channel {channel_id} not ready after {timeout:g}s")
        self.channel_id = channel_id
        self.timeout = timeout


class ProcessSpawnFailure(StreamerError):
    """The transcoder executable could not be launched."""


class SinkPlaybackError(StreamerError):
    """Playback of the transcoder output failed inside the voice player."""


class AuthenticationFailure(StreamerError):
    """Login to Discord was rejected. Fatal."""


class InvalidVolume(StreamerError):
    def __init__(self, raw: object) -> None:
        super().__init__(f"Invalid volume: {raw!r}")
        self.raw = raw


class UnknownCommand(StreamerError):
    def __init__(self, verb: str) -> None:
        super().__init__(f"Unknown command: {verb!r}")
        self.verb = verb
