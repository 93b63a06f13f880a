"""
Error taxonomy for the Gmail sync.

Every run-level failure is one of these. Each carries the machine code
the client switches on, the HTTP status the API answers with, and a
message safe to show the user. Per-message failures never become one of
these; the orchestrator logs and skips them.
"""

from typing import Optional


class SyncError(Exception):
    """Base class: uncategorized failure, safe to retry."""
    code = "UNKNOWN"
    http_status = 500
    user_message = "An unexpected error occurred. Please try again."

    def __init__(self, error: Optional[str] = None, message: Optional[str] = None):
        self.error = error or self.user_message
        self.message = message or self.user_message
        super().__init__(self.error)

    def to_dict(self) -> dict:
        return {"error": self.error, "code": self.code, "message": self.message}


class InvalidTokenError(SyncError):
    code = "INVALID_TOKEN"
    http_status = 401
    user_message = "Your session is invalid. Please log in again."


class NotConnectedError(SyncError):
    code = "NOT_CONNECTED"
    http_status = 400
    user_message = "Please connect your Gmail account first."


class TokenExpiredError(SyncError):
    code = "TOKEN_EXPIRED"
    http_status = 401
    user_message = "Your Gmail session has expired. Please reconnect your account."


class ConnectionFailedError(SyncError):
    code = "CONNECTION_FAILED"
    http_status = 503
    user_message = "Unable to connect to Gmail. Please check your internet connection."


class QuotaExceededError(SyncError):
    code = "QUOTA_EXCEEDED"
    http_status = 403
    user_message = "Daily Gmail sync limit reached. Try again tomorrow."


class RateLimitedError(SyncError):
    code = "RATE_LIMIT_EXCEEDED"
    http_status = 429
    user_message = "Gmail API limit reached. Please wait a few minutes before trying again."


class PermissionDeniedError(SyncError):
    code = "PERMISSION_DENIED"
    http_status = 403
    user_message = "Gmail access was denied. Please grant the required permissions."


class SyncInProgressError(SyncError):
    code = "SYNC_IN_PROGRESS"
    http_status = 409
    user_message = "A sync is already running for this account."
