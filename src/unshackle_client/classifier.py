"""Map raw request failures onto the client error taxonomy.

Every function here is pure: no I/O, no logging, no mutation of its inputs.
"""

from __future__ import annotations

import asyncio

import httpx

from .errors import (
    AuthError,
    ClientError,
    ErrorKind,
    NetworkError,
    NotFoundError,
    RequestTimeoutError,
    ServerError,
    UnknownError,
)

_RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.NETWORK, ErrorKind.SERVER})


def classify(outcome: BaseException | httpx.Response) -> ClientError:
    """Return the taxonomy member for a failed exception or non-success response."""
    if isinstance(outcome, httpx.Response):
        return classify_status(outcome.status_code)
    return classify_exception(outcome)


def classify_exception(exc: BaseException) -> ClientError:
    """Classify an exception raised while sending or decoding a request."""
    if isinstance(exc, ClientError):
        return exc
    if isinstance(exc, (asyncio.CancelledError, TimeoutError, httpx.TimeoutException)):
        return RequestTimeoutError("Request timed out", cause=exc)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code, cause=exc)
    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return NetworkError(_describe(exc, "Network error"), cause=exc)
    return UnknownError(_describe(exc, "An unexpected error occurred"), cause=exc)


def classify_status(
    status_code: int,
    message: str | None = None,
    *,
    cause: BaseException | None = None,
) -> ClientError:
    """Classify a completed response by *status_code*, keeping a server *message*."""
    if status_code in (401, 403):
        return AuthError(
            message or "Authentication failed", status_code=status_code, cause=cause
        )
    if status_code == 404:
        return NotFoundError(
            message or "Resource not found", status_code=status_code, cause=cause
        )
    if 500 <= status_code < 600:
        return ServerError(
            message or f"Server error ({status_code})", status_code=status_code, cause=cause
        )
    return UnknownError(
        message or f"Unexpected response status {status_code}",
        status_code=status_code,
        cause=cause,
    )


def is_retryable(error: BaseException) -> bool:
    """Return True when *error* is plausibly caused by transient infrastructure trouble."""
    return classify_exception(error).kind in _RETRYABLE_KINDS


def _describe(exc: BaseException, fallback: str) -> str:
    text = str(exc)
    return text if text else f"{fallback}: {type(exc).__name__}"
