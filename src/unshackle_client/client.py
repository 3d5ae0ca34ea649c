"""Public async client facade for interacting with an unshackle serve instance."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from functools import partial
from types import TracebackType
from typing import Any, Protocol, cast
from urllib.parse import quote

from pydantic import ValidationError

from .config import ClientConfig, load_config_from_environment
from .errors import RequestValidationError, ServiceResponseError
from .executor import RequestExecutor
from .http import AsyncHttpClientProtocol, RequestSpec, UnshackleHttpClient
from .models import (
    GLOBAL_SCOPE,
    ConnectionScope,
    ConnectionState,
    JobRecord,
    JobScope,
    ServiceDescriptor,
    TitleMetadata,
    TrackMetadata,
)
from .retry import RetryPolicy, SleepFn, with_retry
from .schemas import DownloadRequest, ErrorBody, ResponseEnvelope, TitleQuery
from .stream_transport import StreamTransport
from .streams import ConnectionManager, StreamListener
from .telemetry import NullTelemetrySink, TelemetrySink

logger = logging.getLogger(__name__)


class AsyncUnshackleClient(Protocol):
    """Public async-facing protocol for unshackle serve operations."""

    async def start_job(
        self, request: DownloadRequest | Mapping[str, Any]
    ) -> str:  # pragma: no cover - protocol
        """Queue a download job and return its identifier."""
        ...

    async def get_job(self, job_id: str) -> JobRecord:  # pragma: no cover - protocol
        """Return the current record for *job_id*."""
        ...

    async def list_jobs(
        self, *, include_full_details: bool = True
    ) -> list[JobRecord]:  # pragma: no cover - protocol
        """Return every job known to the service."""
        ...

    async def cancel_job(self, job_id: str) -> None:  # pragma: no cover - protocol
        """Request cancellation of *job_id*."""
        ...

    async def list_services(self) -> list[ServiceDescriptor]:  # pragma: no cover - protocol
        """Return the upstream sources the service can download from."""
        ...

    async def get_title_info(
        self, service: str, title_id: str
    ) -> TitleMetadata | None:  # pragma: no cover - protocol
        """Return metadata for the first title matching *title_id*."""
        ...

    async def get_track_info(
        self, service: str, title_id: str
    ) -> TrackMetadata:  # pragma: no cover - protocol
        """Return available tracks for *title_id*."""
        ...

    def connect_job_events(
        self, job_id: str, listener: StreamListener
    ) -> None:  # pragma: no cover - protocol
        """Stream events for *job_id* to *listener*."""
        ...

    def connect_global_events(
        self, listener: StreamListener
    ) -> None:  # pragma: no cover - protocol
        """Stream service-wide events to *listener*."""
        ...

    async def disconnect(
        self, scope: ConnectionScope | None = None
    ) -> None:  # pragma: no cover - protocol
        """Close the stream for *scope* (all streams when None)."""
        ...

    async def close(self) -> None:  # pragma: no cover - protocol
        """Close streams and release HTTP resources."""
        ...


@dataclass(slots=True)
class UnshackleClientDependencies:
    """Optional dependency overrides for :class:`UnshackleClient`."""

    http_client: AsyncHttpClientProtocol | None = None
    executor: RequestExecutor | None = None
    stream_transport: StreamTransport | None = None
    connection_manager: ConnectionManager | None = None
    telemetry: TelemetrySink | None = None
    sleep: SleepFn | None = None


class UnshackleClient(AsyncUnshackleClient):
    """Concrete async client combining request/response calls and event streams."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        dependencies: UnshackleClientDependencies | None = None,
    ) -> None:
        """Wire optional dependency overrides around *config*.

        When *config* is omitted it is resolved from ``UNSHACKLE_*`` environment variables.
        """
        deps = dependencies or UnshackleClientDependencies()
        config = config or load_config_from_environment()
        self._config = config
        self._telemetry = deps.telemetry or NullTelemetrySink()
        self._sleep: SleepFn = deps.sleep or asyncio.sleep
        self._http_client = deps.http_client or UnshackleHttpClient(config.api)
        self._executor = deps.executor or RequestExecutor(
            self._http_client, telemetry=self._telemetry
        )
        self._retry_policy = RetryPolicy.from_config(config.retry)
        self._connections = deps.connection_manager or ConnectionManager(
            str(config.api.base_url),
            config.api.effective_stream_token,
            transport=deps.stream_transport,
            config=config.stream,
            telemetry=self._telemetry,
            sleep=self._sleep,
        )
        logger.debug("UnshackleClient initialised for %s", config.api.base_url)

    async def __aenter__(self) -> UnshackleClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()

    async def start_job(self, request: DownloadRequest | Mapping[str, Any]) -> str:
        """Queue a download job and return the identifier assigned by the service."""
        body = _validate_download_request(request)
        payload = await self._request(
            RequestSpec(path="/api/download", method="POST", body=body), retry=False
        )
        envelope = _envelope(payload)
        job_id = _bare_field(payload, "job_id")
        if job_id is None:
            _raise_if_failed(envelope, "start_job", "Download failed to start")
            job_id = _wrapped_field(envelope, "job_id")
        if not job_id:
            raise ServiceResponseError("Download failed to start", operation="start_job")
        logger.info("Started job %s for service %s", job_id, body["service"])
        return str(job_id)

    async def get_job(self, job_id: str) -> JobRecord:
        """Return the job record for *job_id*."""
        _require("job_id", job_id)
        payload = await self._request(RequestSpec(path=_job_path(job_id)))
        if _bare_field(payload, "job_id") is not None:
            return cast(JobRecord, payload)
        envelope = _envelope(payload)
        _raise_if_failed(envelope, "get_job", "Failed to get job status")
        if isinstance(envelope.data, Mapping):
            return cast(JobRecord, envelope.data)
        raise ServiceResponseError("No job data received", operation="get_job")

    async def list_jobs(self, *, include_full_details: bool = True) -> list[JobRecord]:
        """Return every job known to the service, from either response envelope."""
        params = {"include_full_details": "true"} if include_full_details else None
        payload = await self._request(RequestSpec(path="/api/download/jobs", params=params))
        return _list_payload(payload, "jobs", operation="list_jobs", fallback="Failed to get jobs")

    async def cancel_job(self, job_id: str) -> None:
        """Ask the service to cancel *job_id*; open streams close on their own."""
        _require("job_id", job_id)
        payload = await self._request(
            RequestSpec(path=_job_path(job_id), method="DELETE"), retry=False
        )
        _raise_if_failed(_envelope(payload), "cancel_job", "Failed to cancel job")
        logger.info("Requested cancellation of job %s", job_id)

    async def list_services(self) -> list[ServiceDescriptor]:
        """Return the upstream sources, from either response envelope."""
        payload = await self._request(RequestSpec(path="/api/services"))
        return _list_payload(
            payload, "services", operation="list_services", fallback="Failed to get services"
        )

    async def get_title_info(self, service: str, title_id: str) -> TitleMetadata | None:
        """Return the first title matching *title_id*, or None when the list is empty."""
        query = _title_query(service, title_id)
        payload = await self._request(
            RequestSpec(path="/api/list-titles", method="POST", body=query)
        )
        titles = _list_payload(
            payload, "titles", operation="get_title_info", fallback="Failed to get title info"
        )
        return titles[0] if titles else None

    async def get_track_info(self, service: str, title_id: str) -> TrackMetadata:
        """Return the track listing for *title_id* as delivered by the service."""
        query = _title_query(service, title_id)
        payload = await self._request(
            RequestSpec(path="/api/list-tracks", method="POST", body=query)
        )
        if _bare_field(payload, "title") is not None:
            return cast(TrackMetadata, payload)
        envelope = _envelope(payload)
        _raise_if_failed(envelope, "get_track_info", "Failed to get track info")
        if isinstance(envelope.data, Mapping) and "title" in envelope.data:
            return cast(TrackMetadata, envelope.data)
        raise ServiceResponseError("Failed to get track info", operation="get_track_info")

    def connect_job_events(self, job_id: str, listener: StreamListener) -> None:
        """Stream events for *job_id* to *listener*; see :class:`ConnectionManager`."""
        _require("job_id", job_id)
        self._connections.connect(JobScope(job_id), listener)

    def connect_global_events(self, listener: StreamListener) -> None:
        """Stream service-wide events to *listener*."""
        self._connections.connect(GLOBAL_SCOPE, listener)

    async def disconnect(self, scope: ConnectionScope | None = None) -> None:
        """Close the stream for *scope*, or all streams when *scope* is None."""
        await self._connections.disconnect(scope)

    def connection_state(self, scope: ConnectionScope = GLOBAL_SCOPE) -> ConnectionState:
        """Return the state of the stream for *scope*."""
        return self._connections.state(scope)

    async def close(self) -> None:
        """Close every stream and the underlying HTTP client."""
        await self._connections.disconnect()
        await self._http_client.close()
        logger.info("UnshackleClient closed")

    async def _request(self, spec: RequestSpec, *, retry: bool = True) -> Any:
        spec = _with_timeout(spec, self._config.api.request_timeout)
        operation = partial(self._executor.execute, spec)
        if not retry:
            return await operation()
        return await with_retry(
            operation, policy=self._retry_policy, sleep=self._sleep, telemetry=self._telemetry
        )


def _job_path(job_id: str) -> str:
    return f"/api/download/jobs/{quote(job_id, safe='')}"


def _with_timeout(spec: RequestSpec, timeout: float) -> RequestSpec:
    return spec if spec.timeout == timeout else replace(spec, timeout=timeout)


def _require(field: str, value: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise RequestValidationError(f"{field} must be a non-empty string")


def _validate_download_request(request: DownloadRequest | Mapping[str, Any]) -> dict[str, Any]:
    try:
        model = (
            request
            if isinstance(request, DownloadRequest)
            else DownloadRequest.model_validate(dict(request))
        )
    except ValidationError as exc:
        raise RequestValidationError(f"Invalid download request: {exc}", cause=exc) from exc
    return model.model_dump(exclude_none=True)


def _title_query(service: str, title_id: str) -> dict[str, Any]:
    try:
        return TitleQuery(service=service, title_id=title_id).model_dump()
    except ValidationError as exc:
        raise RequestValidationError(
            "service and title_id must be non-empty strings", cause=exc
        ) from exc


def _envelope(payload: Any) -> ResponseEnvelope:
    if not isinstance(payload, Mapping):
        return ResponseEnvelope(data=payload)
    body = dict(cast(Mapping[str, Any], payload))
    try:
        return ResponseEnvelope.model_validate(body)
    except ValidationError as exc:
        # Keep the status flag so a malformed error body still reads as a failure.
        logger.debug("Response envelope failed validation: %s", exc)
        status = body.get("status")
        return ResponseEnvelope(
            status=status if isinstance(status, str) else None,
            data=body.get("data"),
            error=_loose_error(body.get("error")),
        )


def _loose_error(value: Any) -> ErrorBody | None:
    if isinstance(value, str):
        return ErrorBody(message=value)
    if isinstance(value, Mapping):
        message = cast(Mapping[str, Any], value).get("message")
        if isinstance(message, str):
            return ErrorBody(message=message)
    return None


def _bare_field(payload: Any, key: str) -> Any:
    if isinstance(payload, Mapping):
        return cast(Mapping[str, Any], payload).get(key)
    return None


def _wrapped_field(envelope: ResponseEnvelope, key: str) -> Any:
    if isinstance(envelope.data, Mapping):
        return cast(Mapping[str, Any], envelope.data).get(key)
    return None


def _raise_if_failed(envelope: ResponseEnvelope, operation: str, fallback: str) -> None:
    if not envelope.failed:
        return
    raw_code = None if envelope.error is None else envelope.error.code
    code = None if raw_code is None else str(raw_code)
    message = envelope.error_message or fallback
    logger.warning("%s reported failure: %s", operation, message)
    raise ServiceResponseError(message, operation=operation, code=code)


def _list_payload(payload: Any, key: str, *, operation: str, fallback: str) -> list[Any]:
    """Normalise ``{key: [...]}`` and ``{status, data: {key: [...]}}`` to the same list."""
    if isinstance(payload, Mapping) and key in payload:
        return _as_list(cast(Mapping[str, Any], payload)[key], operation, fallback)
    envelope = _envelope(payload)
    _raise_if_failed(envelope, operation, fallback)
    if isinstance(envelope.data, Mapping) and key in envelope.data:
        return _as_list(cast(Mapping[str, Any], envelope.data)[key], operation, fallback)
    raise ServiceResponseError(fallback, operation=operation)


def _as_list(value: Any, operation: str, fallback: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return list(cast(Sequence[Any], value))
    raise ServiceResponseError(fallback, operation=operation)
