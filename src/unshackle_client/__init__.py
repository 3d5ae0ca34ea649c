"""Async client for the unshackle serve job-processing API."""

from __future__ import annotations

from .classifier import classify, classify_exception, classify_status, is_retryable
from .client import AsyncUnshackleClient, UnshackleClient, UnshackleClientDependencies
from .config import (
    ApiConfig,
    ClientConfig,
    RetryConfig,
    StreamConfig,
    load_config_from_environment,
)
from .errors import (
    AuthError,
    ClientError,
    ErrorKind,
    NetworkError,
    NotFoundError,
    RequestTimeoutError,
    RequestValidationError,
    ServerError,
    ServiceResponseError,
    StreamConflictError,
    UnknownError,
    UnshackleError,
)
from .executor import RequestExecutor
from .http import RequestSpec, UnshackleHttpClient
from .models import (
    GLOBAL_SCOPE,
    ConnectionScope,
    ConnectionState,
    GlobalScope,
    JobRecord,
    JobScope,
    ServiceDescriptor,
    StreamEvent,
    StreamEventKind,
    TitleMetadata,
    TrackMetadata,
)
from .retry import RetryPolicy, with_retry
from .schemas import DownloadRequest
from .streams import ConnectionManager, QueueStreamListener, StreamListener

__all__ = [
    "GLOBAL_SCOPE",
    "ApiConfig",
    "AsyncUnshackleClient",
    "AuthError",
    "ClientConfig",
    "ClientError",
    "ConnectionManager",
    "ConnectionScope",
    "ConnectionState",
    "DownloadRequest",
    "ErrorKind",
    "GlobalScope",
    "JobRecord",
    "JobScope",
    "NetworkError",
    "NotFoundError",
    "QueueStreamListener",
    "RequestExecutor",
    "RequestSpec",
    "RequestTimeoutError",
    "RequestValidationError",
    "RetryConfig",
    "RetryPolicy",
    "ServerError",
    "ServiceDescriptor",
    "ServiceResponseError",
    "StreamConfig",
    "StreamConflictError",
    "StreamEvent",
    "StreamEventKind",
    "StreamListener",
    "TitleMetadata",
    "TrackMetadata",
    "UnknownError",
    "UnshackleClient",
    "UnshackleClientDependencies",
    "UnshackleError",
    "UnshackleHttpClient",
    "classify",
    "classify_exception",
    "classify_status",
    "is_retryable",
    "load_config_from_environment",
    "with_retry",
]
