# =============================================================================
# LMS Sync Client -- Error Types
# =============================================================================

from __future__ import annotations

from typing import Any

from .constants import (
    CODE_NETWORK_ERROR,
    CODE_NOT_AUTHENTICATED,
    CODE_SESSION_REQUIRED,
    CODE_TIMEOUT,
)


class SyncError(Exception):
    """Base exception for all LMS sync client errors."""


class ApiError(SyncError):
    """A request failed with an HTTP-like status and machine-readable code.

    ``status`` is ``0`` when no response was received at all (timeout,
    network unreachable). Callers match on ``status``/``code``, never on
    the message text.
    """

    def __init__(
        self,
        status: int,
        message: str = "",
        *,
        code: str | None = None,
        body: Any = None,
    ) -> None:
        self.status = status
        self.code = code
        self.body = body
        super().__init__(message or f"Request failed with status {status}")


class NotAuthenticatedError(ApiError):
    """No session could be established for a request that requires one."""

    def __init__(self, message: str = "Session is unavailable", *, body: Any = None) -> None:
        super().__init__(401, message, code=CODE_NOT_AUTHENTICATED, body=body)


class RequestTimeoutError(ApiError):
    """Request aborted by its timeout or by an external cancellation signal."""

    def __init__(self, message: str = "Request aborted (timeout or cancel)") -> None:
        super().__init__(0, message, code=CODE_TIMEOUT)


class NetworkError(ApiError):
    """Transport could not reach the server."""

    def __init__(self, message: str = "Network unreachable") -> None:
        super().__init__(0, message, code=CODE_NETWORK_ERROR)


class SessionGateError(SyncError):
    """A privileged request was attempted without a local session."""

    code = CODE_SESSION_REQUIRED

    def __init__(self, message: str, path: str) -> None:
        self.path = path
        super().__init__(message)


class StorageError(SyncError):
    """Persisting the queue snapshot failed. Reported via hook, never raised."""


class QueueNotInitializedError(SyncError):
    """The queue was used after ``dispose()``."""


def is_retriable(exc: BaseException) -> bool:
    """True for transient failures: no response, timeout, or 5xx."""
    if isinstance(exc, NotAuthenticatedError):
        return False
    if isinstance(exc, ApiError):
        return exc.status == 0 or exc.status >= 500
    # Anything the transport did not classify is treated as a network failure
    return isinstance(exc, (OSError, ConnectionError))


def should_queue(exc: BaseException, *, online: bool = True) -> bool:
    """Decide whether a failed mutation should be buffered for replay.

    Authentication failures are never queued: replaying them without a
    session cannot succeed.
    """
    if isinstance(exc, (NotAuthenticatedError, SessionGateError)):
        return False
    if not online:
        return True
    return is_retriable(exc)
