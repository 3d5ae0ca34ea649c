"""Configuration schemas for the Unshackle client."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import TypedDict

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    NonNegativeInt,
    PositiveFloat,
)

REQUEST_TIMEOUT_SECONDS = 30.0


class _ApiOverrides(TypedDict, total=False):
    """Typed override map for :class:`ApiConfig` initialisation."""

    base_url: HttpUrl
    api_key: str
    request_timeout: float
    stream_token: str


class ApiConfig(BaseModel):
    """Connection parameters for the remote job-processing service."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: HttpUrl = Field(
        default=HttpUrl("http://localhost:8888"),
        description="Root URL of the unshackle serve API",
    )
    api_key: str = Field(..., min_length=1, description="Bearer token sent with every request")
    stream_token: str | None = Field(
        default=None,
        description="Token passed as a query parameter on event streams (defaults to api_key)",
    )
    request_timeout: PositiveFloat = Field(
        default=REQUEST_TIMEOUT_SECONDS,
        description="Deadline in seconds applied to each request/response call",
    )
    user_agent: str = Field(
        default="unshackle-client/0.1", description="User-Agent header for outbound requests"
    )
    max_connections: NonNegativeInt = Field(
        default=10, description="Maximum concurrent HTTP connections"
    )
    enable_http2: bool = Field(
        default=False, description="Whether HTTP/2 should be attempted when available"
    )

    @property
    def effective_stream_token(self) -> str:
        """Return the token used to authenticate event streams."""
        return self.stream_token or self.api_key


class RetryConfig(BaseModel):
    """Bounded exponential backoff for idempotent requests."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_retries: NonNegativeInt = Field(
        default=3, description="Retries attempted after the first failure"
    )
    initial_delay: PositiveFloat = Field(
        default=1.0, description="Delay (seconds) before the first retry; doubles each attempt"
    )
    jitter_ratio: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description=(
            "Fractional jitter applied to each delay (e.g. 0.1 => +/-10% variance). "
            "Zero keeps the deterministic 1s, 2s, 4s sequence."
        ),
    )


class StreamConfig(BaseModel):
    """Runtime tuning for persistent event streams."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_reconnect_attempts: NonNegativeInt = Field(
        default=5, description="Reconnect attempts after transient closes before giving up"
    )
    reconnect_base_delay: PositiveFloat = Field(
        default=1.0, description="Delay (seconds) before the first reconnect; doubles each attempt"
    )
    exclusive: bool = Field(
        default=True,
        description=(
            "Hold at most one stream per client. When False, the global stream and job "
            "streams run side by side, each with its own reconnect counter."
        ),
    )
    open_timeout: PositiveFloat = Field(
        default=10.0, description="Handshake deadline in seconds for opening a stream"
    )
    ping_interval: PositiveFloat | None = Field(
        default=20.0, description="Keepalive ping interval in seconds (None disables pings)"
    )


class ClientConfig(BaseModel):
    """Aggregate configuration for :class:`~unshackle_client.client.UnshackleClient`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    api: ApiConfig
    retry: RetryConfig = Field(default_factory=RetryConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)


def load_config_from_environment(*, env: Mapping[str, str] | None = None) -> ClientConfig:
    """Build a :class:`ClientConfig` from environment variables.

    Recognised variables:
        - ``UNSHACKLE_API_URL`` → ``api.base_url``
        - ``UNSHACKLE_API_KEY`` → ``api.api_key`` (required)
        - ``UNSHACKLE_STREAM_TOKEN`` → ``api.stream_token``
        - ``UNSHACKLE_REQUEST_TIMEOUT`` → ``api.request_timeout`` (seconds)
        - ``UNSHACKLE_MAX_RETRIES`` → ``retry.max_retries``

    The CLI loads ``.env`` via python-dotenv prior to calling this function, so no
    file parsing occurs here.

    Raises:
        ValueError: If the API key is missing or a numeric override is malformed.

    """
    source = dict(os.environ if env is None else env)

    api_key = source.get("UNSHACKLE_API_KEY")
    if not api_key:
        raise ValueError("Missing configuration key: UNSHACKLE_API_KEY")

    api_updates: _ApiOverrides = {"api_key": api_key}
    base_url = source.get("UNSHACKLE_API_URL")
    if base_url:
        api_updates["base_url"] = HttpUrl(base_url)
    stream_token = source.get("UNSHACKLE_STREAM_TOKEN")
    if stream_token:
        api_updates["stream_token"] = stream_token
    timeout_raw = source.get("UNSHACKLE_REQUEST_TIMEOUT")
    if timeout_raw is not None:
        try:
            api_updates["request_timeout"] = float(timeout_raw)
        except ValueError as exc:
            raise ValueError("UNSHACKLE_REQUEST_TIMEOUT must be a floating point value") from exc

    retry = RetryConfig()
    retries_raw = source.get("UNSHACKLE_MAX_RETRIES")
    if retries_raw is not None:
        try:
            retry = RetryConfig(max_retries=int(retries_raw))
        except ValueError as exc:
            raise ValueError("UNSHACKLE_MAX_RETRIES must be a non-negative integer") from exc

    return ClientConfig(api=ApiConfig(**api_updates), retry=retry)
