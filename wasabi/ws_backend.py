"""Backend that relays requests over one upstream WebSocket per client."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from types import MappingProxyType
from typing import Any

import aiohttp
from aiohttp import WSMsgType

from .core import Connection, Context, MessageType, Request, StatusCode

WSDialer = Callable[[Context, str], Awaitable[Any]]
WSRequestFactory = Callable[[Request], "tuple[MessageType, bytes]"]

_END_TYPES = frozenset({WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR})


async def _run_within(ctx: Context, awaitable: Awaitable[Any]) -> Any:
    """Await a result, raising the context's error if it ends first."""
    task = asyncio.ensure_future(awaitable)
    if ctx.done:
        task.cancel()
        raise ctx.error
    waiter = asyncio.ensure_future(ctx.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if task.done() and not task.cancelled():
        return task.result()
    error = ctx.error
    if error is None:
        raise asyncio.CancelledError()
    raise error


class _DialedWebSocket:
    """A client WebSocket that owns the session it was opened with."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws

    async def receive(self) -> aiohttp.WSMessage:
        return await self._ws.receive()

    async def send_str(self, data: str) -> None:
        await self._ws.send_str(data)

    async def send_bytes(self, data: bytes) -> None:
        await self._ws.send_bytes(data)

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        try:
            return await self._ws.close(code=code, message=message)
        finally:
            await self._session.close()


async def dial(ctx: Context, url: str) -> _DialedWebSocket:
    """Open a WebSocket to ``url``, giving up when ``ctx`` ends."""
    session = aiohttp.ClientSession()
    try:
        ws = await _run_within(ctx, session.ws_connect(url))
    except BaseException:
        await session.close()
        raise
    return _DialedWebSocket(session, ws)


async def _write(ws: Any, msg_type: MessageType, data: bytes) -> None:
    if msg_type == MessageType.TEXT:
        await ws.send_str(bytes(data).decode("utf-8"))
    elif msg_type == MessageType.BINARY:
        await ws.send_bytes(bytes(data))
    else:
        raise ValueError(f"unknown message type {msg_type!r}")


def _status(code: Any) -> Any:
    try:
        return StatusCode(code)
    except ValueError:
        return code


class WSBackend:
    """Forwards each client's requests over its own upstream WebSocket and
    relays every upstream message back to that client."""

    def __init__(self, url: str, factory: WSRequestFactory, dialer: WSDialer = dial) -> None:
        self.url = url
        self.factory = factory
        self.dialer = dialer
        self._connections: dict[str, Any] = {}
        self._dialing: dict[str, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def connections(self) -> MappingProxyType:
        """Upstream sockets by client connection id."""
        return MappingProxyType(self._connections)

    async def handle(self, conn: Connection, req: Request) -> None:
        """Send the request over the client's upstream WebSocket."""
        ws = await self._get_connection(conn)
        msg_type, data = self.factory(req)
        await _run_within(req.context, _write(ws, msg_type, data))

    async def _get_connection(self, conn: Connection) -> Any:
        ws = self._connections.get(conn.id)
        if ws is not None:
            return ws

        conn_id = conn.id
        inflight = self._dialing.get(conn_id)
        if inflight is None:
            inflight = asyncio.ensure_future(self._connect(conn))
            self._dialing[conn_id] = inflight

            def _forget(future: asyncio.Future) -> None:
                if self._dialing.get(conn_id) is future:
                    del self._dialing[conn_id]

            inflight.add_done_callback(_forget)
        return await asyncio.shield(inflight)

    async def _connect(self, conn: Connection) -> Any:
        try:
            ws = await self.dialer(conn.context, self.url)
        except Exception:
            with suppress(Exception):
                await conn.close(StatusCode.INTERNAL_ERROR, "Internal Server Error")
            raise

        self._connections[conn.id] = ws
        task = asyncio.create_task(self._relay_responses(ws, conn))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ws

    async def _relay_responses(self, server: Any, client: Connection) -> None:
        code: Any = StatusCode.NORMAL_CLOSURE
        reason = "connection closed"
        ctx = client.context
        try:
            while not ctx.done:
                try:
                    msg = await _run_within(ctx, server.receive())
                except Exception:
                    return
                if msg.type == WSMsgType.CLOSE:
                    code = _status(msg.data)
                    reason = msg.extra or ""
                    return
                if msg.type in _END_TYPES:
                    return
                if msg.type == WSMsgType.TEXT:
                    msg_type, data = MessageType.TEXT, msg.data.encode("utf-8")
                elif msg.type == WSMsgType.BINARY:
                    msg_type, data = MessageType.BINARY, bytes(msg.data)
                else:
                    continue
                try:
                    await client.send(msg_type, data)
                except Exception:
                    return
        finally:
            if self._connections.get(client.id) is server:
                del self._connections[client.id]
            with suppress(Exception):
                await server.close(code=int(code), message=reason.encode("utf-8"))
            with suppress(Exception):
                await client.close(code, reason)