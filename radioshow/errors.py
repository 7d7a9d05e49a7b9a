"""Error taxonomy for the show pipeline and its collaborators."""


class RadioShowError(Exception):
    """Base class for all radioshow errors."""


class TimeoutFailure(RadioShowError):
    """An external call did not answer within its time budget."""


class GenerationFailure(RadioShowError):
    """Text generation failed after all retries."""


class GenerationTimeout(GenerationFailure, TimeoutFailure):
    """Text generation timed out."""


class SynthesisFailure(RadioShowError):
    """Speech synthesis failed after all retries."""


class SynthesisTimeout(SynthesisFailure, TimeoutFailure):
    """Speech synthesis timed out."""


class SinkWriteFailure(RadioShowError):
    """A sink could not accept a frame."""


class TelephonyCodecFailure(RadioShowError):
    """A telephone audio frame could not be decoded or encoded."""


class CollaboratorError(RadioShowError):
    """Raised by collaborator adapters. Non-transient errors are not retried."""

    transient = False


class TransientError(CollaboratorError):
    """Network hiccup or 5xx; worth retrying."""

    transient = True


class RateLimitError(TransientError):
    """The collaborator asked us to slow down."""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after
