"""Error taxonomy reported in push results."""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    UNKNOWN_TABLE = "unknown_table"
    MALFORMED_PAYLOAD = "malformed_payload"
    NOT_FOUND = "not_found"
    GONE = "gone"
    UNIQUE_VIOLATION = "unique_violation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    DEADLINE_EXCEEDED = "deadline_exceeded"


RETRYABLE_KINDS = frozenset({ErrorKind.STORAGE_UNAVAILABLE, ErrorKind.DEADLINE_EXCEEDED})


def is_retryable(kind) -> bool:
    try:
        return ErrorKind(kind) in RETRYABLE_KINDS
    except ValueError:
        return False


class SyncError(Exception):
    """Raised inside the sync services; converted to a failed result row by the applier."""

    kind = ErrorKind.MALFORMED_PAYLOAD

    def __init__(self, message: str = "", field: Optional[str] = None, kind: Optional[ErrorKind] = None):
        super().__init__(message or self.__class__.__name__)
        if kind is not None:
            self.kind = kind
        self.field = field

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)


class UnknownTable(SyncError):
    kind = ErrorKind.UNKNOWN_TABLE


class MalformedPayload(SyncError):
    kind = ErrorKind.MALFORMED_PAYLOAD


class RecordNotFound(SyncError):
    kind = ErrorKind.NOT_FOUND


class RecordGone(SyncError):
    kind = ErrorKind.GONE


class UniqueViolation(SyncError):
    kind = ErrorKind.UNIQUE_VIOLATION


class ConflictClosed(Exception):
    """A conflict in a terminal state cannot be resolved again."""
