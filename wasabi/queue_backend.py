"""Backend that hands requests to an external queue and awaits replies."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .core import Connection, ConnectionClosedError, Context, MessageType, Request

OnRequestCallback = Callable[[Connection, Request, str], Awaitable[Any]]


@dataclass
class _Pending:
    future: asyncio.Future
    ctx: Context


class QueueBackend:
    """Passes each request to a callback with an id and sends back the response
    delivered later through on_response."""

    def __init__(self, on_request: OnRequestCallback) -> None:
        self._on_request = on_request
        self._pending: dict[str, _Pending] = {}
        self._last_id = 1

    async def handle(self, conn: Connection, req: Request) -> None:
        """Queue the request and forward its response to the connection.

        Raises the request context's error if it ends before a response arrives.
        """
        self._last_id += 1
        request_id = str(self._last_id)
        future = asyncio.get_running_loop().create_future()
        ctx = req.context
        self._pending[request_id] = _Pending(future, ctx)

        try:
            await self._on_request(conn, req, request_id)
            msg_type, data = await self._wait_response(future, ctx)
            try:
                await conn.send(msg_type, data)
            except ConnectionClosedError:
                return
        finally:
            del self._pending[request_id]
            if not future.done():
                future.cancel()

    def on_response(self, request_id: str, msg_type: MessageType, data: bytes) -> None:
        """Deliver a response; it is discarded if nobody awaits it."""
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done() or pending.ctx.done:
            return
        pending.future.set_result((msg_type, data))

    @staticmethod
    async def _wait_response(future: asyncio.Future, ctx: Context) -> tuple[MessageType, bytes]:
        if not future.done():
            if ctx.done:
                raise ctx.error
            waiter = asyncio.ensure_future(ctx.wait())
            try:
                await asyncio.wait({future, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()
        if future.done():
            return future.result()
        raise ctx.error