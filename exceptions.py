"""
Error taxonomy for the POS catalog sync engine.

Item-level errors are collected per item by the batch executor and attached to the
sync log entry. Only AuthError and ExecutorConfigurationError stop a whole run.
"""

from typing import Optional


class PosSyncError(Exception):
    """Base class for sync engine errors."""

    error_code = 'UNKNOWN_ERROR'
    retryable = True

    def __init__(self, message: str = '', details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            'error': self.message,
            'code': self.error_code,
            'details': self.details
        }


class AuthError(PosSyncError):
    """Expired, revoked or missing credential. Fatal to the current run."""

    error_code = 'AUTH_ERROR'
    retryable = False


class RateLimitError(PosSyncError):
    """Remote API asked us to slow down."""

    error_code = 'RATE_LIMITED'
    retryable = True

    def __init__(self, message: str = 'Rate limit exceeded', retry_after: Optional[float] = None,
                 details: Optional[dict] = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class TransientRemoteError(PosSyncError):
    """Network failure or 5xx response."""

    error_code = 'TRANSIENT_REMOTE_ERROR'
    retryable = True

    def __init__(self, message: str = '', status: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.status = status


class ValidationError(PosSyncError):
    """Malformed record. Fails a single item, never retried."""

    error_code = 'VALIDATION_ERROR'
    retryable = False

    def __init__(self, message: str = '', code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        if code:
            self.error_code = code


class ConflictReviewRequired(PosSyncError):
    """Signals that a field conflict was routed to manual review."""

    error_code = 'MANUAL_REVIEW'
    retryable = False

    def __init__(self, field: str, message: str = '', details: Optional[dict] = None):
        super().__init__(message or f"Conflict on '{field}' requires manual review", details)
        self.field = field


class ExecutorConfigurationError(PosSyncError, ValueError):
    """Bad executor options or malformed input. Aborts the run."""

    error_code = 'EXECUTOR_CONFIGURATION'
    retryable = False


class OAuthStateError(PosSyncError):
    """OAuth state parameter is invalid or expired."""

    error_code = 'INVALID_STATE'
    retryable = False


class SyncInProgressError(PosSyncError):
    """A sync run for the same tenant and integration is already running."""

    error_code = 'SYNC_IN_PROGRESS'
    retryable = False


def error_code_for(error: BaseException) -> str:
    """Return the error code recorded for an exception."""
    if isinstance(error, PosSyncError):
        return error.error_code
    return 'UNKNOWN_ERROR'


def is_retryable(error: BaseException) -> bool:
    """Whether the batch executor should retry after this error."""
    if isinstance(error, PosSyncError):
        return error.retryable
    return True
