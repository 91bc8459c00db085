"""Registry that tracks live client connections."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from .connection import OnMessage, WebSocketConnection
from .core import Context, StatusCode

ConnectionHook = Callable[[WebSocketConnection], Any]

_CONCURRENCY_LIMIT_PER_CONNECTION = 25
_FRAME_SIZE_LIMIT_IN_BYTES = 32768
_INACTIVITY_TIMEOUT = 0.0
_CONNECTION_LIMIT = -1


async def _call_hook(hook: ConnectionHook, conn: WebSocketConnection) -> None:
    result = hook(conn)
    if inspect.isawaitable(result):
        await result


async def _reject(ws: Any, status: StatusCode, reason: str) -> None:
    with suppress(Exception):
        await ws.close(code=int(status), message=reason.encode("utf-8"))


class ConnectionRegistry:
    """Keeps track of connections and serves each one until it ends.

    ``frame_size_limit`` is the largest accepted message in bytes (-1 for no
    limit), ``concurrency_limit`` the number of requests one connection may run
    at once, ``inactivity_timeout`` in seconds closes idle connections (0
    disables it), and ``connection_limit`` caps live connections (-1 or 0 for
    no cap). Hooks may be plain functions or coroutine functions.
    """

    def __init__(
        self,
        frame_size_limit: int = _FRAME_SIZE_LIMIT_IN_BYTES,
        concurrency_limit: int = _CONCURRENCY_LIMIT_PER_CONNECTION,
        inactivity_timeout: float = _INACTIVITY_TIMEOUT,
        on_connect: ConnectionHook | None = None,
        on_disconnect: ConnectionHook | None = None,
        connection_limit: int = _CONNECTION_LIMIT,
    ) -> None:
        self.frame_size_limit = frame_size_limit
        self.concurrency_limit = concurrency_limit
        self.inactivity_timeout = inactivity_timeout
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.connection_limit = connection_limit
        self._connections: dict[str, WebSocketConnection] = {}
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._connections)

    async def handle_connection(self, ctx: Context, ws: Any, on_message: OnMessage) -> None:
        """Register a WebSocket and serve it until the connection ends."""
        if self._closed:
            await _reject(ws, StatusCode.SERVICE_RESTART, "Server is shutting down")
            return

        if 0 < self.connection_limit <= len(self._connections):
            await _reject(ws, StatusCode.TRY_AGAIN_LATER, "Connection limit reached")
            return

        conn = WebSocketConnection(
            ctx, ws, on_message, self.concurrency_limit, self.inactivity_timeout
        )
        conn.read_limit = self.frame_size_limit if self.frame_size_limit >= 0 else None
        self._connections[conn.id] = conn

        try:
            if self.on_connect is not None:
                await _call_hook(self.on_connect, conn)
            await conn.handle_requests()
        finally:
            connection = self._connections.pop(conn.id, conn)

        if self.on_disconnect is not None:
            await _call_hook(self.on_disconnect, connection)

    def can_accept(self) -> bool:
        """Whether another connection fits under the connection limit."""
        if self.connection_limit <= 0:
            return True
        return len(self._connections) < self.connection_limit

    def get_connection(self, conn_id: str) -> WebSocketConnection | None:
        return self._connections.get(conn_id)

    async def close(self, ctx: Context | None = None) -> None:
        """Stop accepting connections and close every live one.

        With a context, each connection waits for its requests in flight
        until the context ends.
        """
        self._closed = True
        connections = list(self._connections.values())
        await asyncio.gather(
            *(conn.close(StatusCode.SERVICE_RESTART, "", ctx) for conn in connections),
            return_exceptions=True,
        )