"""Core types shared by the dispatcher, channels and backends."""

from __future__ import annotations

import asyncio
import enum
import time
import weakref
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol


class MessageType(enum.IntEnum):
    """WebSocket data frame type."""

    TEXT = 1
    BINARY = 2


class StatusCode(enum.IntEnum):
    """WebSocket close status codes."""

    NORMAL_CLOSURE = 1000
    GOING_AWAY = 1001
    PROTOCOL_ERROR = 1002
    UNSUPPORTED_DATA = 1003
    NO_STATUS_RCVD = 1005
    ABNORMAL_CLOSURE = 1006
    INVALID_FRAME_PAYLOAD_DATA = 1007
    POLICY_VIOLATION = 1008
    MESSAGE_TOO_BIG = 1009
    MANDATORY_EXTENSION = 1010
    INTERNAL_ERROR = 1011
    SERVICE_RESTART = 1012
    TRY_AGAIN_LATER = 1013
    BAD_GATEWAY = 1014
    TLS_HANDSHAKE = 1015


class ConnectionClosedError(Exception):
    """Raised when sending to or closing a connection that is already closed."""

    def __init__(self, message: str = "connection is closed") -> None:
        super().__init__(message)


class ContextCancelledError(Exception):
    """The context was cancelled explicitly."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class DeadlineExceededError(TimeoutError):
    """The context's deadline passed."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)


class Context:
    """A cancellable scope with an optional deadline, inherited by child contexts."""

    def __init__(self, parent: Context | None = None, timeout: float | None = None) -> None:
        self._parent = parent
        self._error: Exception | None = None
        self._event = asyncio.Event()
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()

        deadline = None if timeout is None else time.monotonic() + timeout
        if parent is not None:
            if parent.deadline is not None and (deadline is None or parent.deadline < deadline):
                deadline = parent.deadline
            parent._children.add(self)
        self._deadline = deadline

        if parent is not None and parent.error is not None:
            self._finish(parent.error)

    @property
    def deadline(self) -> float | None:
        """Monotonic time at which the context expires, if any."""
        return self._deadline

    @property
    def error(self) -> Exception | None:
        """Why the context is done, or None while it is still active."""
        if self._error is None:
            if self._parent is not None and self._parent.error is not None:
                self._finish(self._parent.error)
            elif self._deadline is not None and time.monotonic() >= self._deadline:
                self._finish(DeadlineExceededError())
        return self._error

    @property
    def done(self) -> bool:
        return self.error is not None

    def cancel(self) -> None:
        """Cancel this context and every context derived from it."""
        self._finish(ContextCancelledError())

    async def wait(self) -> None:
        """Wait until the context is cancelled or its deadline passes."""
        while self.error is None:
            remaining = None
            if self._deadline is not None:
                remaining = max(0.0, self._deadline - time.monotonic())
            try:
                await asyncio.wait_for(self._event.wait(), remaining)
            except TimeoutError:
                pass

    def _finish(self, error: Exception) -> None:
        if self._error is not None:
            return
        self._error = error
        self._event.set()
        for child in list(self._children):
            child._finish(error)


class Connection(Protocol):
    """A client connection that messages can be sent to."""

    @property
    def id(self) -> str: ...

    @property
    def context(self) -> Context: ...

    async def send(self, msg_type: MessageType, data: bytes) -> None: ...

    async def close(
        self, status: StatusCode, reason: str, closing_ctx: Context | None = None
    ) -> None: ...


class Request(Protocol):
    """A parsed client request."""

    data: bytes
    context: Context

    def routing_key(self) -> str: ...

    def with_context(self, ctx: Context) -> Request: ...


class RequestHandler(Protocol):
    """Anything that can handle a request for a connection."""

    async def handle(self, conn: Connection, req: Request) -> Any: ...


@dataclass(frozen=True)
class RequestHandlerFunc:
    """Adapts a coroutine function to the RequestHandler interface."""

    func: Callable[[Connection, Request], Awaitable[Any]]

    async def handle(self, conn: Connection, req: Request) -> Any:
        return await self.func(conn, req)


RequestMiddleware = Callable[[RequestHandler], RequestHandler]
RequestParser = Callable[[Connection, Context, MessageType, bytes], "Request | None"]
Middleware = Callable[[Any], Any]