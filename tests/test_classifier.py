"""Tests for the request failure classifier."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from unshackle_client import (
    AuthError,
    ErrorKind,
    NetworkError,
    NotFoundError,
    RequestTimeoutError,
    RequestValidationError,
    ServerError,
    UnknownError,
    classify,
    classify_exception,
    classify_status,
    is_retryable,
)

REQUEST = httpx.Request("GET", "http://unshackle.test/api/services")


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (401, AuthError),
        (403, AuthError),
        (404, NotFoundError),
        (500, ServerError),
        (502, ServerError),
        (599, ServerError),
        (400, UnknownError),
        (422, UnknownError),
        (302, UnknownError),
    ],
)
def test_classify_status_maps_codes(status_code: int, expected: type[Exception]) -> None:
    error = classify_status(status_code)
    assert type(error) is expected
    assert error.status_code == status_code


def test_classify_status_keeps_server_message() -> None:
    error = classify_status(503, "queue is full")
    assert isinstance(error, ServerError)
    assert error.message == "queue is full"


def test_classify_response_uses_status() -> None:
    error = classify(httpx.Response(404, request=REQUEST))
    assert error.kind is ErrorKind.NOT_FOUND


def test_timeouts_and_cancellation_classify_as_timeout() -> None:
    for exc in (
        TimeoutError(),
        asyncio.CancelledError(),
        httpx.ReadTimeout("slow", request=REQUEST),
    ):
        assert isinstance(classify_exception(exc), RequestTimeoutError)


def test_transport_failures_classify_as_network() -> None:
    for exc in (
        httpx.ConnectError("refused", request=REQUEST),
        ConnectionResetError("reset by peer"),
        OSError("unreachable"),
    ):
        error = classify_exception(exc)
        assert isinstance(error, NetworkError)
        assert error.cause is exc


def test_http_status_error_classifies_by_response() -> None:
    response = httpx.Response(500, request=REQUEST)
    exc = httpx.HTTPStatusError("boom", request=REQUEST, response=response)
    assert isinstance(classify_exception(exc), ServerError)


def test_unrecognised_exception_classifies_as_unknown() -> None:
    error = classify_exception(RuntimeError("odd"))
    assert isinstance(error, UnknownError)
    assert error.message == "odd"


def test_already_classified_error_is_returned_unchanged() -> None:
    original = AuthError("nope", status_code=401)
    assert classify_exception(original) is original


def test_only_network_and_server_errors_are_retryable() -> None:
    assert is_retryable(NetworkError("down"))
    assert is_retryable(ServerError("oops", status_code=500))
    assert is_retryable(httpx.ConnectError("refused", request=REQUEST))
    assert not is_retryable(AuthError("nope", status_code=401))
    assert not is_retryable(NotFoundError("gone", status_code=404))
    assert not is_retryable(RequestTimeoutError("slow"))
    assert not is_retryable(RequestValidationError("bad"))
    assert not is_retryable(UnknownError("odd"))
