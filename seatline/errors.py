"""
Exception types raised across the inbound message pipeline.

Transport-level problems (bad signature, malformed envelope) never get this
far: they are turned into HTTPException in main.py. These types cover the
business and collaborator faults the pipeline translates into chat replies.
"""

from typing import Optional


class SeatlineError(Exception):
    """Base class for service errors."""


class InvalidPhoneNumber(SeatlineError):
    """Raised when a phone number cannot be normalized."""

    def __init__(self, original_input: str, reason: str):
        self.original_input = original_input
        self.reason = reason
        super().__init__(f"Invalid phone number {original_input!r}: {reason}")


class TemplateNotFound(SeatlineError, KeyError):
    """Raised when a message template key is unknown."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Template not found: {key}")

    def __str__(self) -> str:
        return f"Template not found: {self.key}"


class TemplateRenderError(SeatlineError):
    """Raised when a template is rendered without all of its variables."""


class BackendError(SeatlineError):
    """Raised for a single failed AI backend attempt."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True,
                 retry_after: Optional[float] = None):
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(message)


class BackendUnavailable(SeatlineError):
    """Raised when the AI backend could not produce an answer after all retries."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class ProviderSendError(SeatlineError):
    """Raised when the messaging provider rejects or fails an outbound send."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)
