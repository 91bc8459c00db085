"""Connection wrapper that can replace send and close behaviour."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from .core import Connection, Context, MessageType, StatusCode

SendWrapper = Callable[[Connection, MessageType, bytes], Awaitable[Any]]
CloseWrapper = Callable[[Connection, StatusCode, str, "Context | None"], Awaitable[Any]]


class ConnectionWrapper:
    """Wraps a connection, optionally routing send and close through callbacks."""

    def __init__(
        self,
        connection: Connection,
        on_send: SendWrapper | None = None,
        on_close: CloseWrapper | None = None,
    ) -> None:
        self.connection = connection
        self.on_send = on_send
        self.on_close = on_close

    @property
    def id(self) -> str:
        return self.connection.id

    @property
    def context(self) -> Context:
        return self.connection.context

    async def send(self, msg_type: MessageType, data: bytes) -> Any:
        if self.on_send is not None:
            return await self.on_send(self.connection, msg_type, data)
        return await self.connection.send(msg_type, data)

    async def close(
        self, status: StatusCode, reason: str, closing_ctx: Context | None = None
    ) -> Any:
        if self.on_close is not None:
            return await self.on_close(self.connection, status, reason, closing_ctx)
        return await self.connection.close(status, reason, closing_ctx)