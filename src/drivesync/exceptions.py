"""
Exception taxonomy shared by the remote clients and the sync engine.
"""

from typing import Optional


class RemoteError(Exception):
    """Base class for remote storage failures."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationError(RemoteError):
    """
    Credentials are missing, rejected, or could not be refreshed.

    Never retried. Halts the running reconciliation pass and asks the
    remote client to invalidate its stored credentials.
    """
    pass


class TransientError(RemoteError):
    """Failure that may succeed when retried (network, rate limit, server)."""
    pass


class APIConnectionError(TransientError):
    """Raised when the API connection or a server-side call fails."""
    pass


class RateLimitError(TransientError):
    """Raised when API rate limit is exceeded."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class NotFoundError(RemoteError):
    """The referenced remote item does not exist."""

    def __init__(self, message: str):
        super().__init__(message, status=404)


class PersistenceError(Exception):
    """
    Reading or writing sync state failed.

    Raised by the state store's file helpers and always caught inside the
    store, which then keeps working from its in-memory view.
    """
    pass


class ConflictAlreadyPendingError(Exception):
    """An 'ask' decision is already outstanding for this path."""

    def __init__(self, path: str):
        super().__init__(f"A conflict decision is already pending for {path}")
        self.path = path


class SyncEngineError(Exception):
    """Base exception for sync engine lifecycle errors."""
    pass


AUTH_STATUS_CODES = (401, 403)
AUTH_ERROR_SIGNATURES = ("invalid_request", "invalid_grant", "invalid_token")


def is_auth_error(error: BaseException) -> bool:
    """Check whether an error carries an authentication-failure signature."""
    if isinstance(error, AuthenticationError):
        return True
    if isinstance(error, TransientError):
        return False

    for attr in ("status", "code", "status_code"):
        if getattr(error, attr, None) in AUTH_STATUS_CODES:
            return True

    message = str(error)
    return any(signature in message for signature in AUTH_ERROR_SIGNATURES)
