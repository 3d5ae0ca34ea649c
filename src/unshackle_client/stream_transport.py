"""Duplex stream transport used by the connection manager."""

from __future__ import annotations

import logging
from typing import Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from .config import StreamConfig
from .models import ABNORMAL_CLOSURE_CODE, NORMAL_CLOSURE_CODE

logger = logging.getLogger(__name__)


class StreamClosed(Exception):
    """Signals that the remote side (or the network) closed the stream."""

    def __init__(self, code: int, reason: str = "") -> None:
        """Record the close *code* and optional *reason*."""
        super().__init__(f"stream closed with code {code}" + (f": {reason}" if reason else ""))
        self.code = code
        self.reason = reason


class StreamConnection(Protocol):
    """An open duplex connection delivering inbound text or binary frames."""

    async def receive(self) -> str | bytes:  # pragma: no cover - protocol
        """Return the next inbound frame or raise :class:`StreamClosed`."""
        ...

    async def close(
        self, code: int = NORMAL_CLOSURE_CODE, reason: str = ""
    ) -> None:  # pragma: no cover - protocol
        """Close the connection with *code*."""
        ...


class StreamTransport(Protocol):
    """Factory opening stream connections."""

    async def connect(self, url: str) -> StreamConnection:  # pragma: no cover - protocol
        """Perform the handshake against *url* and return the open connection."""
        ...


class WebSocketConnection(StreamConnection):
    """Adapter exposing a ``websockets`` client connection as a :class:`StreamConnection`."""

    def __init__(self, websocket: ClientConnection) -> None:
        """Wrap an established *websocket*."""
        self._websocket = websocket

    async def receive(self) -> str | bytes:
        """Return the next frame, translating library close exceptions."""
        try:
            return await self._websocket.recv()
        except ConnectionClosed as exc:
            code, reason = _close_details(exc)
            raise StreamClosed(code, reason) from exc

    async def close(self, code: int = NORMAL_CLOSURE_CODE, reason: str = "") -> None:
        """Send a close frame and wait for the closing handshake."""
        await self._websocket.close(code, reason)


class WebSocketTransport(StreamTransport):
    """Opens event streams with the ``websockets`` asyncio client."""

    def __init__(self, config: StreamConfig | None = None) -> None:
        """Create a transport tuned by *config*."""
        self._config = config or StreamConfig()

    async def connect(self, url: str) -> StreamConnection:
        """Open a websocket to *url*."""
        logger.debug("Opening websocket %s", _redact(url))
        websocket = await connect(
            url,
            open_timeout=self._config.open_timeout,
            ping_interval=self._config.ping_interval,
            max_size=None,
        )
        return WebSocketConnection(websocket)


def _close_details(exc: ConnectionClosed) -> tuple[int, str]:
    """Return the close code and reason received from the peer, if any."""
    if exc.rcvd is not None:
        return exc.rcvd.code, exc.rcvd.reason
    return ABNORMAL_CLOSURE_CODE, ""


def _redact(url: str) -> str:
    """Hide the token query parameter in log output."""
    head, sep, _ = url.partition("token=")
    return f"{head}{sep}***" if sep else url
