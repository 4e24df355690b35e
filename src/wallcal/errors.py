from __future__ import annotations


class CalendarSyncError(RuntimeError):
    """Base class for failures surfaced to callers of sync/extend."""

    code = "SYNC_FAILED"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class NotConnectedError(CalendarSyncError):
    """Raised when the Google account has no usable credentials."""

    code = "NOT_CONNECTED"


class NoSourcesError(CalendarSyncError):
    code = "NO_SOURCES"


class InvalidRangeError(CalendarSyncError, ValueError):
    """Raised when an extension bound cannot be parsed."""

    code = "INVALID_RANGE"


class SourceUnavailableError(CalendarSyncError):
    """Raised when the only configured source failed."""

    code = "SOURCE_UNAVAILABLE"
