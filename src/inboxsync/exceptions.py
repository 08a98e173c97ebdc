"""Custom exceptions for inboxsync."""

from typing import Any, Optional


class InboxSyncError(Exception):
    """Base class for all inboxsync errors."""


class ConnectionLostError(InboxSyncError):
    """Raised when the persistent connection drops or cannot be opened."""

    def __init__(self, message: str = "Connection lost", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class AuthError(InboxSyncError):
    """Raised when the server rejects our credentials.

    Never retried automatically: a fresh token must be supplied via
    ``update_auth`` and the caller must reconnect explicitly.
    """

    def __init__(self, message: str = "Authentication failed", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RoomJoinError(InboxSyncError):
    """Raised when a join_room/leave_room request could not be delivered."""

    def __init__(self, room: str, cause: Optional[BaseException] = None):
        super().__init__(f"Could not deliver room request for {room}")
        self.room = room
        self.cause = cause


class SendTimeoutError(InboxSyncError):
    """Raised when an optimistic send is not confirmed in time."""

    def __init__(self, correlation_id: str, timeout: float):
        super().__init__(
            f"Message {correlation_id} was not confirmed within {timeout:.1f}s"
        )
        self.correlation_id = correlation_id
        self.timeout = timeout


class MaxReconnectAttemptsError(InboxSyncError):
    """Raised when reconnection gives up after the configured attempts."""

    def __init__(self, attempts: int):
        super().__init__(f"Gave up reconnecting after {attempts} attempts")
        self.attempts = attempts


class FrameValidationError(InboxSyncError):
    """Raised for inbound frames that are not a recognised event shape."""

    def __init__(self, message: str, frame: Any = None):
        super().__init__(message)
        self.frame = frame


class ApiError(InboxSyncError):
    """Error returned by the REST collaborator."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetryableApiError(ApiError):
    """REST error that should trigger a retry."""


class NonRetryableApiError(ApiError):
    """REST error that should not be retried."""
