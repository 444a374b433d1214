class SafetyError(Exception):
    """Base class for errors raised by the safety services."""


class ValidationFailed(SafetyError):
    """Bad form input. The message is shown inline and the user may resubmit."""


class RecordNotFound(SafetyError):
    """A session user or alert record is missing.

    Never shown to the user: the caller is sent back to ``redirect_to``.
    """

    def __init__(self, message: str, redirect_to: str = "/api/dashboard"):
        super().__init__(message)
        self.redirect_to = redirect_to


class ToneUnavailable(SafetyError):
    """Tone generation is unsupported or blocked in this environment."""
