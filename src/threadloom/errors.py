"""Error taxonomy shared by the store, branch manager, versioner and streams."""

from __future__ import annotations

from enum import Enum


class ThreadloomError(Exception):
    """Base class for errors raised by threadloom."""


class NotFound(ThreadloomError):
    """A referenced conversation, message or artifact does not exist."""


class InvalidArgument(ThreadloomError):
    """Empty content, unknown role, malformed identifier and the like."""


class InvariantViolation(ThreadloomError):
    """The write would break the message tree (e.g. in-place edit of a non-leaf)."""


class Busy(ThreadloomError):
    """A superseded stream did not settle in time."""


class FailureKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    UNAUTHENTICATED = "unauthenticated"
    NETWORK = "network"
    INVALID = "invalid"


class CollaboratorFailure(ThreadloomError):
    """The response producer failed; ``kind`` tells the client whether a retry makes sense."""

    def __init__(self, kind: FailureKind, message: str = ""):
        self.kind = FailureKind(kind)
        super().__init__(message or self.kind.value)
