"""Exception hierarchy for call setup, signaling, media and matchmaking."""


class CallError(Exception):
    """Base class for every error raised by campus_call."""


class SignalingError(CallError):
    pass


class InvalidMessage(SignalingError):
    """A relay payload failed validation at the channel boundary."""


class ChannelJoinError(SignalingError):
    """Subscribing to a signaling topic failed; call setup is aborted."""


class MediaError(CallError):
    pass


class MediaAccessDenied(MediaError):
    """The user refused camera/microphone access. Never retried."""


class MediaUnavailable(MediaError):
    """No usable capture device, even after the audio-only fallback."""


class CallSetupError(CallError):
    """A local negotiation step failed before the call was established."""


class CallSessionConflict(CallError):
    """A ringing session already exists between the two users."""


class MatchmakingError(CallError):
    pass


class SessionStoreError(CallError):
    """The call session ledger could not be read or written."""
