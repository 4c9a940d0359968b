from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    POLICY = "policy"


class SendError(Exception):
    """
    Failure reported by a delivery attempt.

    `status` is an HTTP-like code when the channel gave one; `kind` pins the
    classification when the raiser already knows it. Either may be None, in
    which case RetryPolicy falls back to reading the message text.
    """

    def __init__(self, message: str, status: Optional[int] = None, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.kind = ErrorKind(kind) if kind is not None else None

    def __repr__(self):
        return f"SendError({self.message!r}, status={self.status}, kind={self.kind})"


class PolicyBlocked(SendError):
    """Sending was stopped on purpose (kill switch, sending disabled)."""

    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.POLICY)


class StoreError(RuntimeError):
    """The job log could not be read or written."""
