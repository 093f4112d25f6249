"""Error types raised by the notesync subsystem."""

from typing import Optional


class NotesyncError(Exception):
    """Base class for all notesync errors."""


class SyncQueueError(NotesyncError):
    """A queue entry could not be written, read or removed.

    Raised for local I/O failures; the triggering user action must fail.
    """


class OperationTooLargeError(NotesyncError):
    """A single operation does not fit the request byte budget on its own."""

    def __init__(self, op_id: str, size: int, max_bytes: int):
        super().__init__(
            f"Operation {op_id} serializes to {size} bytes, "
            f"exceeding the batch limit of {max_bytes} bytes"
        )
        self.op_id = op_id
        self.size = size
        self.max_bytes = max_bytes


class AuthenticationError(NotesyncError):
    """The notesync service rejected our credentials."""


class NotSignedInError(AuthenticationError):
    """No access token is stored."""


class SessionExpiredError(AuthenticationError):
    """Credentials could not be refreshed; the user has to sign in again."""

    user_message = "Session expired. Please sign in again."


class NotesyncHTTPError(NotesyncError):
    """A non-success response from the notesync service."""

    def __init__(self, status_code: int, body: Optional[str] = None, path: Optional[str] = None):
        message = f"Notesync request failed with status {status_code}"
        if path:
            message += f" ({path})"
        if body:
            message += f": {body[:500]}"
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.path = path


class SyncInProgressError(NotesyncError):
    """A sync or restore pass is already running."""
