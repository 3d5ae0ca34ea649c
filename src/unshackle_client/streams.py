"""Persistent event-stream connections with an explicit reconnect state machine.

Each :class:`ConnectionManager` owns a map from :data:`ConnectionScope` to the
state of that scope's stream: the open connection, its :class:`ConnectionState`,
the reconnect counter, the listener and the background task driving it. Nothing
here raises to the caller once a stream is requested; every lifecycle change is
delivered to the scope's :class:`StreamListener` as a :class:`StreamEvent`.

Close handling follows the service contract:

* ``4001`` (auth rejected) is terminal in every scope.
* ``4004`` (job not found) is terminal for job scopes.
* Any other code is transient: reconnect after ``2**n`` base delays, at most
  ``max_reconnect_attempts`` times. The counter resets whenever a stream opens.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import quote, urlencode

from .classifier import classify_exception
from .config import StreamConfig
from .errors import StreamConflictError
from .models import (
    ABNORMAL_CLOSURE_CODE,
    AUTH_REJECTED_CLOSE_CODE,
    JOB_NOT_FOUND_CLOSE_CODE,
    NORMAL_CLOSURE_CODE,
    ConnectionScope,
    ConnectionState,
    JobScope,
    StreamEvent,
    StreamEventKind,
)
from .stream_transport import StreamClosed, StreamConnection, StreamTransport, WebSocketTransport
from .telemetry import (
    NullTelemetrySink,
    ReconnectScheduledEvent,
    StreamClosedEvent,
    TelemetrySink,
)

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

_DISCONNECT_REASON = "client disconnect"


@dataclass(slots=True)
class StreamListener:
    """Callbacks receiving stream notifications.

    ``on_event`` sees every :class:`StreamEvent`; the remaining hooks are invoked
    for their matching event kind only.
    """

    on_message: Callable[[object], None] | None = None
    on_open: Callable[[], None] | None = None
    on_close: Callable[[], None] | None = None
    on_auth_error: Callable[[], None] | None = None
    on_not_found: Callable[[], None] | None = None
    on_error: Callable[[BaseException], None] | None = None
    on_event: Callable[[StreamEvent], None] | None = None

    def dispatch(self, event: StreamEvent) -> None:
        """Route *event* to the catch-all hook and then to its dedicated hook."""
        if self.on_event is not None:
            self.on_event(event)
        kind = event.kind
        if kind is StreamEventKind.MESSAGE:
            if self.on_message is not None:
                self.on_message(event.payload)
        elif kind is StreamEventKind.OPEN:
            if self.on_open is not None:
                self.on_open()
        elif kind is StreamEventKind.CLOSE:
            if self.on_close is not None:
                self.on_close()
        elif kind is StreamEventKind.AUTH_ERROR:
            if self.on_auth_error is not None:
                self.on_auth_error()
        elif kind is StreamEventKind.NOT_FOUND:
            if self.on_not_found is not None:
                self.on_not_found()
        elif kind is StreamEventKind.ERROR:
            if self.on_error is not None and event.error is not None:
                self.on_error(event.error)


class QueueStreamListener(StreamListener):
    """Listener that buffers every event on an asyncio queue.

    Iterating the listener yields events until a terminal one (auth rejection or
    job not found) has been delivered.
    """

    def __init__(self, maxsize: int = 0) -> None:
        """Create the listener with a queue bounded by *maxsize* (0 = unbounded)."""
        super().__init__(on_event=self._enqueue)
        self.queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=maxsize)

    def _enqueue(self, event: StreamEvent) -> None:
        self.queue.put_nowait(event)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self.queue.get()
            yield event
            if event.terminal:
                return


@dataclass(slots=True)
class _ScopeState:
    """Mutable bookkeeping for a single scope."""

    listener: StreamListener
    state: ConnectionState = ConnectionState.IDLE
    attempts: int = 0
    connection: StreamConnection | None = None
    task: asyncio.Task[None] | None = None
    closing: bool = False

    @property
    def active(self) -> bool:
        """Return True while connecting, open, or waiting to reconnect."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return True
        return self.task is not None and not self.task.done()


def stream_url(base_url: str, scope: ConnectionScope, token: str) -> str:
    """Return the websocket URL for *scope*, carrying *token* as a query parameter."""
    root = re.sub(r"^http", "ws", base_url.rstrip("/"))
    if isinstance(scope, JobScope):
        path = f"/api/download/jobs/{quote(scope.job_id, safe='')}/events"
    else:
        path = "/api/events"
    return f"{root}{path}?{urlencode({'token': token})}"


class ConnectionManager:
    """Opens, watches and recovers event streams for global and job scopes."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        transport: StreamTransport | None = None,
        config: StreamConfig | None = None,
        telemetry: TelemetrySink | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Create a manager for streams rooted at *base_url*, authenticated with *token*."""
        self._base_url = base_url
        self._token = token
        self._config = config or StreamConfig()
        self._transport = transport or WebSocketTransport(self._config)
        self._telemetry = telemetry or NullTelemetrySink()
        self._sleep = sleep
        self._scopes: dict[ConnectionScope, _ScopeState] = {}

    def state(self, scope: ConnectionScope) -> ConnectionState:
        """Return the connection state of *scope* (``IDLE`` when never connected)."""
        entry = self._scopes.get(scope)
        return ConnectionState.IDLE if entry is None else entry.state

    def reconnect_attempts(self, scope: ConnectionScope) -> int:
        """Return the reconnect counter for *scope*."""
        entry = self._scopes.get(scope)
        return 0 if entry is None else entry.attempts

    def active_scopes(self) -> list[ConnectionScope]:
        """Return scopes that are connecting, open, or waiting to reconnect."""
        return [scope for scope, entry in self._scopes.items() if entry.active]

    def connect(self, scope: ConnectionScope, listener: StreamListener) -> None:
        """Start streaming *scope* to *listener*; must be called from the event loop.

        Idempotent: an open scope immediately reports ``OPEN`` to *listener* and a
        connecting scope ignores the call. Calling this while a reconnect is
        pending cancels the pending timer and connects straight away.
        """
        entry = self._scopes.get(scope)
        if entry is not None and entry.state is ConnectionState.OPEN:
            logger.debug("Stream %s already open; skipping connection", scope)
            self._notify(listener, StreamEvent(kind=StreamEventKind.OPEN, scope=scope))
            return
        if entry is not None and entry.state is ConnectionState.CONNECTING:
            logger.debug("Stream %s already connecting; skipping", scope)
            return

        blocker = self._exclusive_blocker(scope)
        if blocker is not None:
            logger.warning(
                "Refusing stream %s while stream %s is active on this client", scope, blocker
            )
            conflict = StreamConflictError(
                f"Cannot open stream {scope}: stream {blocker} is already active"
            )
            self._notify(
                listener, StreamEvent(kind=StreamEventKind.ERROR, scope=scope, error=conflict)
            )
            return

        if entry is None:
            entry = _ScopeState(listener=listener)
            self._scopes[scope] = entry
        else:
            if entry.task is not None and not entry.task.done():
                logger.debug("Cancelling pending reconnect for %s", scope)
                entry.task.cancel()
            entry.listener = listener

        entry.state = ConnectionState.CONNECTING
        entry.task = asyncio.get_running_loop().create_task(
            self._run(scope, entry), name=f"unshackle-stream-{scope}"
        )

    async def disconnect(self, scope: ConnectionScope | None = None) -> None:
        """Close the stream for *scope*, or every stream when *scope* is None.

        The listener receives ``CLOSE`` through the normal close path, but a
        caller-initiated disconnect never schedules a reconnect.
        """
        targets = list(self._scopes) if scope is None else [scope]
        for target in targets:
            entry = self._scopes.pop(target, None)
            if entry is None:
                continue
            await self._shutdown(target, entry)

    async def _shutdown(self, scope: ConnectionScope, entry: _ScopeState) -> None:
        entry.closing = True
        was_live = entry.state in (ConnectionState.CONNECTING, ConnectionState.OPEN)
        task = entry.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
        connection = entry.connection
        if connection is not None:
            try:
                await connection.close(NORMAL_CLOSURE_CODE, _DISCONNECT_REASON)
            except Exception as exc:  # pragma: no cover - best effort path
                logger.warning("Failed to close stream %s cleanly", scope, exc_info=exc)
        if was_live:
            self._handle_close(scope, entry, NORMAL_CLOSURE_CODE, _DISCONNECT_REASON)
        entry.state = ConnectionState.IDLE
        logger.info("Stream %s disconnected", scope)

    async def _run(self, scope: ConnectionScope, entry: _ScopeState) -> None:
        while True:
            code, reason = await self._open_and_read(scope, entry)
            if not self._handle_close(scope, entry, code, reason):
                self._release(scope, entry)
                return
            delay = self._config.reconnect_base_delay * (2**entry.attempts)
            entry.attempts += 1
            logger.info(
                "Reconnecting stream %s in %.1fs (attempt %d of %d)",
                scope,
                delay,
                entry.attempts,
                self._config.max_reconnect_attempts,
            )
            self._telemetry.record_event(
                ReconnectScheduledEvent(
                    scope=str(scope), attempt=entry.attempts, delay_seconds=delay
                )
            )
            await self._sleep(delay)
            if entry.task is not asyncio.current_task() or self._scopes.get(scope) is not entry:
                return
            entry.state = ConnectionState.CONNECTING

    async def _open_and_read(
        self, scope: ConnectionScope, entry: _ScopeState
    ) -> tuple[int, str]:
        """Open the stream and pump frames until it closes; return the close code and reason."""
        url = stream_url(self._base_url, scope, self._token)
        try:
            connection = await self._transport.connect(url)
        except Exception as exc:
            # The close that follows decides whether to reconnect.
            logger.warning("Failed to open stream %s: %s", scope, exc)
            error = classify_exception(exc)
            self._emit(entry, StreamEvent(kind=StreamEventKind.ERROR, scope=scope, error=error))
            return ABNORMAL_CLOSURE_CODE, str(exc)

        entry.connection = connection
        entry.state = ConnectionState.OPEN
        entry.attempts = 0
        logger.info("Stream %s open", scope)
        self._emit(entry, StreamEvent(kind=StreamEventKind.OPEN, scope=scope))

        while True:
            try:
                frame = await connection.receive()
            except StreamClosed as closed:
                return closed.code, closed.reason
            except Exception as exc:
                logger.warning("Stream %s transport error: %s", scope, exc)
                await self._discard(scope, connection)
                error = classify_exception(exc)
                self._emit(
                    entry, StreamEvent(kind=StreamEventKind.ERROR, scope=scope, error=error)
                )
                return ABNORMAL_CLOSURE_CODE, str(exc)
            self._deliver_frame(scope, entry, frame)

    async def _discard(self, scope: ConnectionScope, connection: StreamConnection) -> None:
        """Close a connection abandoned after a transport error."""
        try:
            await connection.close()
        except Exception as exc:
            logger.debug("Ignoring close failure on broken stream %s: %s", scope, exc)

    def _release(self, scope: ConnectionScope, entry: _ScopeState) -> None:
        """Forget a scope whose stream ended without a pending reconnect."""
        if self._scopes.get(scope) is entry and entry.task is asyncio.current_task():
            del self._scopes[scope]
            logger.debug("Stream %s released", scope)

    def _handle_close(
        self, scope: ConnectionScope, entry: _ScopeState, code: int, reason: str
    ) -> bool:
        """Report a close and return True when a reconnect should be scheduled."""
        entry.connection = None
        entry.state = ConnectionState.CLOSED
        logger.info("Stream %s closed with code %s", scope, code)
        self._telemetry.record_event(
            StreamClosedEvent(scope=str(scope), close_code=code, reason=reason or None)
        )
        self._emit(
            entry,
            StreamEvent(
                kind=StreamEventKind.CLOSE, scope=scope, close_code=code, reason=reason or None
            ),
        )
        if entry.closing:
            return False
        if code == AUTH_REJECTED_CLOSE_CODE:
            logger.error("Authentication rejected for stream %s", scope)
            self._emit(
                entry,
                StreamEvent(kind=StreamEventKind.AUTH_ERROR, scope=scope, close_code=code),
            )
            return False
        if code == JOB_NOT_FOUND_CLOSE_CODE and isinstance(scope, JobScope):
            logger.error("Job %s not found for stream", scope.job_id)
            self._emit(
                entry,
                StreamEvent(kind=StreamEventKind.NOT_FOUND, scope=scope, close_code=code),
            )
            return False
        if entry.attempts >= self._config.max_reconnect_attempts:
            logger.warning(
                "Stream %s exhausted %d reconnect attempts; giving up",
                scope,
                self._config.max_reconnect_attempts,
            )
            return False
        return True

    def _deliver_frame(
        self, scope: ConnectionScope, entry: _ScopeState, frame: str | bytes
    ) -> None:
        try:
            payload = json.loads(frame)
        except ValueError as exc:
            logger.warning("Dropping undecodable frame on stream %s: %s", scope, exc)
            return
        self._emit(entry, StreamEvent(kind=StreamEventKind.MESSAGE, scope=scope, payload=payload))

    def _exclusive_blocker(self, scope: ConnectionScope) -> ConnectionScope | None:
        if not self._config.exclusive:
            return None
        for other, entry in self._scopes.items():
            if other != scope and entry.active:
                return other
        return None

    def _emit(self, entry: _ScopeState, event: StreamEvent) -> None:
        self._notify(entry.listener, event)

    def _notify(self, listener: StreamListener, event: StreamEvent) -> None:
        try:
            listener.dispatch(event)
        except Exception:
            logger.exception(
                "Stream listener failed handling %s event for %s", event.kind.value, event.scope
            )
