"""A request that carries a raw WebSocket message."""

from __future__ import annotations

from .core import Context, MessageType


class RawRequest:
    """Request holding the unparsed message data, routed by its frame type."""

    __slots__ = ("context", "data", "msg_type")

    def __init__(self, ctx: Context, msg_type: MessageType, data: bytes) -> None:
        if ctx is None:
            raise ValueError("nil context")
        self.context = ctx
        self.msg_type = msg_type
        self.data = data

    def routing_key(self) -> str:
        """Return "text" or "binary" depending on the message type."""
        if self.msg_type == MessageType.TEXT:
            return "text"
        if self.msg_type == MessageType.BINARY:
            return "binary"
        raise ValueError(f"unknown message type {self.msg_type!r}")

    def with_context(self, ctx: Context) -> RawRequest:
        """Replace the request's context and return the same request."""
        if ctx is None:
            raise ValueError("nil context")
        self.context = ctx
        return self