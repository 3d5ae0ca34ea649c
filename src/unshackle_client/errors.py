"""Exception hierarchy for the Unshackle client library."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar


class UnshackleError(Exception):
    """Base exception for all Unshackle client errors."""


class ErrorKind(str, Enum):
    """Closed taxonomy of request/response failures."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    SERVER = "server"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class ClientError(UnshackleError):
    """Classified failure of a single request/response attempt.

    The taxonomy member is fixed by the concrete subclass at construction time.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Store *message*, the optional HTTP *status_code* and underlying *cause*."""
        super().__init__(message)
        self._message = message
        self._status_code = status_code
        self._cause = cause

    @property
    def message(self) -> str:
        """Human-readable description of the failure."""
        return self._message

    @property
    def status_code(self) -> int | None:
        """HTTP status code when the failure came from a completed response."""
        return self._status_code

    @property
    def cause(self) -> BaseException | None:
        """Underlying exception, if any."""
        return self._cause

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self._message!r}, "
            f"status_code={self._status_code!r})"
        )


class NetworkError(ClientError):
    """Raised when the transport could not reach the service."""

    kind = ErrorKind.NETWORK


class RequestTimeoutError(ClientError):
    """Raised when a request exceeded its deadline or was cancelled."""

    kind = ErrorKind.TIMEOUT


class AuthError(ClientError):
    """Raised when the service rejected the API key (401/403)."""

    kind = ErrorKind.AUTH


class NotFoundError(ClientError):
    """Raised when the requested resource does not exist (404)."""

    kind = ErrorKind.NOT_FOUND


class ServerError(ClientError):
    """Raised when the service failed with a 5xx status."""

    kind = ErrorKind.SERVER


class RequestValidationError(ClientError):
    """Raised when a request is rejected locally before any I/O."""

    kind = ErrorKind.VALIDATION


class UnknownError(ClientError):
    """Raised for failures that fit no other category."""

    kind = ErrorKind.UNKNOWN


class ServiceResponseError(UnshackleError):
    """Raised when a response envelope reports failure or lacks its payload."""

    def __init__(self, message: str, *, operation: str, code: str | None = None) -> None:
        """Record the failing *operation* and the optional service error *code*."""
        super().__init__(message)
        self.operation = operation
        self.code = code


class StreamConflictError(UnshackleError):
    """Reported when an exclusive connection manager already owns another scope."""
