"""Exceptions raised by winlog operations."""

from winlog.models import Entry


class WinlogError(Exception):
    """Base exception for winlog errors."""

    pass


class ValidationError(WinlogError):
    """Raised when user input is rejected before any state changes."""

    pass


class PersistenceError(WinlogError):
    """Raised when a storage read or write fails."""

    pass


class EntryNotCountedError(PersistenceError):
    """Raised when an entry was stored but the aggregate update failed.

    The stored entry is available as ``entry``.
    """

    def __init__(self, message: str, entry: Entry) -> None:
        super().__init__(message)
        self.entry = entry
