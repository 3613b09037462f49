"""Error kinds reported by a retiming session."""


class RetimeError(RuntimeError):
    """Base class for every failure a session can report."""


class InvalidConfiguration(RetimeError, ValueError):
    """Non-positive frame rate or duration, or a malformed config record."""


class DecodeStartFailure(RetimeError):
    """A decoder could not start reading its track."""


class EncodeAppendFailure(RetimeError):
    """An encoder rejected a chunk or frame."""


class EmptyAudioTrack(RetimeError):
    """The computed output sample length is zero or negative."""


class Cancelled(RetimeError):
    """The session was cancelled cooperatively."""


class NoTracksWritten(RetimeError):
    """Neither the video nor the audio pipeline produced any output."""
