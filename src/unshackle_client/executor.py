"""Single-attempt request execution with deadlines and error classification."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any, TypeVar, cast, overload

import httpx
from pydantic import BaseModel, ValidationError

from .classifier import classify_exception, classify_status
from .errors import ClientError, RequestTimeoutError, UnknownError
from .http import AsyncHttpClientProtocol, RequestSpec
from .telemetry import (
    NullTelemetrySink,
    RequestFailedEvent,
    RequestLatencyMetric,
    TelemetrySink,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class RequestExecutor:
    """Issues one request under a deadline and routes failures through the classifier.

    No retries happen here; wrap calls with :func:`~unshackle_client.retry.with_retry`
    when an operation is idempotent.
    """

    def __init__(
        self,
        http_client: AsyncHttpClientProtocol,
        *,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create an executor sending requests through *http_client*."""
        self._http_client = http_client
        self._telemetry = telemetry or NullTelemetrySink()

    @overload
    async def execute(self, spec: RequestSpec, model: None = None) -> Any: ...

    @overload
    async def execute(self, spec: RequestSpec, model: type[ModelT]) -> ModelT: ...

    async def execute(self, spec: RequestSpec, model: type[BaseModel] | None = None) -> Any:
        """Send *spec* once and return the decoded JSON payload (or *model* instance).

        Raises:
            ClientError: The classified failure; exactly one outcome per call.

        """
        started = time.perf_counter()
        try:
            try:
                async with asyncio.timeout(spec.timeout):
                    response = await self._http_client.send(spec)
            except TimeoutError as exc:
                raise RequestTimeoutError(
                    f"Request timed out after {spec.timeout:g} seconds", cause=exc
                ) from exc
            except Exception as exc:
                # Anything the transport raises, including URL construction errors.
                raise classify_exception(exc) from exc
            if not response.is_success:
                raise self._error_from_response(response)
            payload = _decode_body(response, model)
        except ClientError as error:
            self._record_failure(spec, error)
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.debug(
            "%s %s completed with %s in %.2f ms",
            spec.method,
            spec.path,
            response.status_code,
            elapsed_ms,
        )
        self._telemetry.record_metric(
            RequestLatencyMetric(
                method=spec.method,
                path=spec.path,
                status_code=response.status_code,
                elapsed_ms=elapsed_ms,
            )
        )
        return payload

    def _error_from_response(self, response: httpx.Response) -> ClientError:
        """Prefer the server-supplied message; fall back to the generic status mapping."""
        message = _structured_error_message(response)
        return classify_status(response.status_code, message)

    def _record_failure(self, spec: RequestSpec, error: ClientError) -> None:
        logger.warning(
            "%s %s failed (%s, status=%s): %s",
            spec.method,
            spec.path,
            error.kind.value,
            error.status_code,
            error.message,
        )
        self._telemetry.record_event(
            RequestFailedEvent(
                method=spec.method,
                path=spec.path,
                error_kind=error.kind.value,
                status_code=error.status_code,
                message=error.message,
            )
        )


def _decode_body(response: httpx.Response, model: type[BaseModel] | None) -> Any:
    if not response.content:
        payload: Any = {}
    else:
        try:
            payload = response.json()
        except ValueError as exc:
            raise UnknownError(
                "Response payload is not valid JSON", status_code=response.status_code, cause=exc
            ) from exc
    if model is None:
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise UnknownError(
            f"Response payload does not match {model.__name__}",
            status_code=response.status_code,
            cause=exc,
        ) from exc


def _structured_error_message(response: httpx.Response) -> str | None:
    """Extract a message from ``{"error": {...}}``, ``{"message"}`` or ``{"detail"}`` bodies."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, Mapping):
        return None
    typed_body = cast(Mapping[str, Any], body)
    error = typed_body.get("error")
    if isinstance(error, Mapping):
        message = cast(Mapping[str, Any], error).get("message")
        if isinstance(message, str) and message:
            return message
    elif isinstance(error, str) and error:
        return error
    for key in ("message", "detail"):
        value = typed_body.get(key)
        if isinstance(value, str) and value:
            return value
    return None
