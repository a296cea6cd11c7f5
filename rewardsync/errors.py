"""Error taxonomy shared by the synchronization layer."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for every failure surfaced by rewardsync."""

    def __init__(self, message: str = "", *, key: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.key = key


class InvalidKey(SyncError):
    """Raised when an external id cannot be used as a storage key."""


class MalformedWrite(SyncError):
    """Raised when a write is missing a required field after sanitizing."""


class InvariantViolation(SyncError):
    """Raised when a mutation would break a record invariant."""


class NotEligible(InvariantViolation):
    """Raised when a reward or action precondition does not hold."""


class Unavailable(SyncError):
    """Raised when the record store cannot be reached."""


class NotFound(SyncError):
    """Raised when a record does not exist in the store."""


class Denied(SyncError):
    """Raised when the store rejects an operation."""


class WriteTimeout(SyncError):
    """Raised when an authoritative write does not resolve in time."""


class Conflict(SyncError):
    """Raised when the stored revision moved on since the record was read."""


#: failures that happen after an optimistic write and require rollback
ROLLBACK_ERRORS = (Unavailable, Denied, NotFound, WriteTimeout)


__all__ = [
    "Conflict",
    "Denied",
    "InvalidKey",
    "InvariantViolation",
    "MalformedWrite",
    "NotEligible",
    "NotFound",
    "ROLLBACK_ERRORS",
    "SyncError",
    "Unavailable",
    "WriteTimeout",
]
