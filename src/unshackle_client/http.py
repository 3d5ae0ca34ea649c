"""Async HTTP client abstraction tailored for unshackle serve interactions."""

from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .config import REQUEST_TIMEOUT_SECONDS, ApiConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RequestSpec:
    """Description of a single request/response call."""

    path: str
    method: str = "GET"
    body: Any = None
    params: Mapping[str, Any] | None = None
    headers: Mapping[str, str] | None = None
    timeout: float = REQUEST_TIMEOUT_SECONDS


class AsyncHttpClientProtocol(Protocol):
    """Protocol describing the async HTTP operations required by the client."""

    async def send(self, spec: RequestSpec) -> httpx.Response:  # pragma: no cover - protocol
        """Send *spec* once and return the HTTP response without checking its status."""
        ...

    async def close(self) -> None:  # pragma: no cover - protocol signature
        """Release HTTP resources and close underlying connections."""
        ...


class UnshackleHttpClient(AsyncHttpClientProtocol):
    """httpx-based client that injects bearer auth and manages connection pooling."""

    def __init__(
        self,
        config: ApiConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialise the HTTP client with *config* and an optional httpx *transport*."""
        self._config = config
        limits = httpx.Limits(max_connections=self._config.max_connections or None)
        self._client = httpx.AsyncClient(
            base_url=str(self._config.base_url).rstrip("/"),
            http2=self._config.enable_http2,
            limits=limits,
            headers=self._build_default_headers(),
            # Deadlines are enforced by the request executor via cooperative cancellation.
            timeout=None,
            transport=transport,
        )

    async def send(self, spec: RequestSpec) -> httpx.Response:
        """Send *spec* and return the response; status handling is left to the caller."""
        logger.debug(
            "%s %s with params=%s",
            spec.method,
            spec.path,
            None if spec.params is None else list(spec.params.keys()),
        )
        try:
            response = await self._client.request(
                spec.method,
                spec.path,
                params=spec.params,
                json=spec.body,
                headers=self._merge_headers(spec.headers),
                follow_redirects=False,
            )
        except httpx.HTTPError as exc:
            logger.error("HTTP %s %s failed: %s", spec.method, spec.path, exc)
            raise
        logger.debug("%s %s returned %s", spec.method, spec.path, response.status_code)
        return response

    async def close(self) -> None:
        """Close the underlying httpx.AsyncClient instance."""
        await self._client.aclose()
        logger.debug("httpx.AsyncClient closed for base URL %s", self._client.base_url)

    def _merge_headers(self, headers: Mapping[str, str] | None) -> MutableMapping[str, str]:
        """Merge default headers with per-request *headers* overrides."""
        merged: MutableMapping[str, str] = dict(self._client.headers)
        if headers:
            merged.update(headers)
        return merged

    def _build_default_headers(self) -> MutableMapping[str, str]:
        """Return the default header set applied to every request."""
        return {
            "User-Agent": self._config.user_agent,
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._config.api_key}",
        }
