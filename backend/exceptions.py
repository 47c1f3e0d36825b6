"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients.
  The global handler logs the full message at ERROR and returns a generic
  "Internal server error" (500) to the client.
- ``SyncError`` and its subclasses: failures of the replication engine. The
  engine catches per-item failures (one table, one file) and counts them;
  only failures that stop a whole run surface in the progress record.
- ``ValidationError``: a rejected path, file type or table name. Fatal for
  that item only; the peer endpoints map it to HTTP 400/403.
"""

from __future__ import annotations

from typing import Any


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``backend/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class SyncError(Exception):
    """Base class for replication failures."""


class TransportError(SyncError):
    """Network-level failure talking to the peer."""


class TransportTimeoutError(TransportError):
    """The request timed out. The only transport failure that is retried."""


class AuthError(SyncError):
    """The peer rejected the shared secret. Never retried."""


class RemoteError(SyncError):
    """The peer answered with a non-200 status or an undecodable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteListingError(SyncError):
    """The remote file listing could not be obtained."""


class ValidationError(SyncError):
    """A path, file type or table name was rejected."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class BudgetExceeded(SyncError):
    """The run reached its time budget. Completed work stays valid."""

    def __init__(self, message: str, partial: Any = None) -> None:
        super().__init__(message)
        self.partial = partial


class SyncAlreadyRunningError(SyncError):
    """A sync is already recorded as active."""

    def __init__(self, sync_id: str) -> None:
        super().__init__(f"Sync {sync_id} is already running")
        self.sync_id = sync_id


class IntegrityWarning(UserWarning):
    """Hash mismatch after writing a downloaded file. Logged, not raised."""
