"""A client WebSocket connection that reads messages and hands them to a callback."""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

from aiohttp import WSMsgType

from .core import ConnectionClosedError, Context, MessageType, StatusCode

logger = logging.getLogger(__name__)

OnMessage = Callable[[Any, MessageType, bytes], "Awaitable[Any] | Any"]

_CLOSE_NOW_TIMEOUT = 1.0
_STOPPED = object()
_END_TYPES = frozenset(
    {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR}
)
_DATA_TYPES = frozenset({WSMsgType.TEXT, WSMsgType.BINARY})


class _State(enum.Enum):
    CONNECTED = enum.auto()
    CLOSING = enum.auto()
    TERMINATED = enum.auto()


class WebSocketConnection:
    """Reads messages from a WebSocket and runs a callback for each of them.

    ``ws`` is an aiohttp WebSocket (server or client side) or anything with the
    same ``receive``, ``send_str``, ``send_bytes`` and ``close`` coroutines.
    At most ``concurrency_limit`` callbacks run at once; while the limit is
    reached no further messages are read. With a positive
    ``inactivity_timeout`` (seconds) the connection is closed when nothing is
    read or sent for that long; this needs a running event loop at creation.
    """

    def __init__(
        self,
        ctx: Context,
        ws: Any,
        on_message: OnMessage | None,
        concurrency_limit: int = 25,
        inactivity_timeout: float = 0.0,
    ) -> None:
        self._id = str(uuid.uuid4())
        self._ctx = Context(ctx)
        self._ws = ws
        self._on_message = on_message
        self._slots = asyncio.Semaphore(concurrency_limit)
        self._tasks: set[asyncio.Task] = set()
        self._state = _State.CONNECTED
        self._inactivity_timeout = inactivity_timeout
        self._last_activity = time.monotonic()
        self.read_limit: int | None = None
        self._watcher: asyncio.Task | None = None
        if inactivity_timeout > 0:
            loop = asyncio.get_running_loop()
            self._watcher = loop.create_task(self._watch_inactivity())

    @property
    def id(self) -> str:
        return self._id

    @property
    def context(self) -> Context:
        return self._ctx

    async def handle_requests(self) -> None:
        """Read messages until the connection ends, then terminate it."""
        try:
            while not self._ctx.done:
                if await self._until_done(self._slots.acquire()) is _STOPPED:
                    return
                self._touch()
                try:
                    msg = await self._until_done(self._ws.receive())
                except ConnectionError:
                    self._slots.release()
                    return
                except Exception as exc:
                    self._slots.release()
                    logger.warning("Error reading message: %s", exc)
                    return

                if msg is _STOPPED or msg.type in _END_TYPES:
                    self._slots.release()
                    if msg is not _STOPPED and msg.type == WSMsgType.ERROR:
                        logger.warning("Error reading message: %s", msg.data)
                    return

                if self._state is _State.CLOSING or msg.type not in _DATA_TYPES:
                    self._slots.release()
                    continue

                data = msg.data.encode("utf-8") if isinstance(msg.data, str) else bytes(msg.data)
                if self.read_limit is not None and len(data) > self.read_limit:
                    self._slots.release()
                    with suppress(Exception):
                        await self._ws.close(
                            code=int(StatusCode.MESSAGE_TOO_BIG),
                            message=f"read limited at {self.read_limit} bytes".encode(),
                        )
                    return

                msg_type = MessageType.TEXT if msg.type == WSMsgType.TEXT else MessageType.BINARY
                task = asyncio.create_task(self._process(msg_type, data))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            await self.terminate()

    async def send(self, msg_type: MessageType, data: bytes) -> None:
        """Send a message; raises ConnectionClosedError once the connection ended."""
        if self._ctx.done:
            raise ConnectionClosedError()
        self._touch()
        try:
            if msg_type == MessageType.TEXT:
                await self._ws.send_str(bytes(data).decode("utf-8"))
            elif msg_type == MessageType.BINARY:
                await self._ws.send_bytes(bytes(data))
            else:
                raise ValueError(f"unknown message type {msg_type!r}")
        except ConnectionError as exc:
            raise ConnectionClosedError() from exc

    async def close(
        self,
        status: StatusCode = StatusCode.NORMAL_CLOSURE,
        reason: str = "",
        closing_ctx: Context | None = None,
    ) -> None:
        """Close the connection with a status and reason.

        With a closing context, wait for requests in flight to finish until
        that context ends. Raises ConnectionClosedError if already closing or
        closed.
        """
        if self._state is not _State.CONNECTED:
            raise ConnectionClosedError()
        self._state = _State.CLOSING

        if closing_ctx is not None:
            await self._drain(closing_ctx)

        with suppress(Exception):
            await self._ws.close(code=int(status), message=reason.encode("utf-8"))

        self._ctx.cancel()
        self._state = _State.TERMINATED

    async def terminate(self) -> None:
        """End the connection at once and wait for requests in flight."""
        if self._state is _State.TERMINATED:
            return
        self._state = _State.TERMINATED
        self._ctx.cancel()

        with suppress(Exception):
            await asyncio.wait_for(self._ws.close(), _CLOSE_NOW_TIMEOUT)

        pending = self._other_tasks()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _process(self, msg_type: MessageType, data: bytes) -> None:
        try:
            if self._on_message is not None:
                result = self._on_message(self, msg_type, data)
                if inspect.isawaitable(result):
                    await result
        except Exception:
            logger.exception("Error handling message")
        finally:
            self._slots.release()

    async def _drain(self, closing_ctx: Context) -> None:
        pending = self._other_tasks()
        if not pending:
            return
        waiters = {
            asyncio.ensure_future(asyncio.wait(pending)),
            asyncio.ensure_future(closing_ctx.wait()),
            asyncio.ensure_future(self._ctx.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _until_done(self, awaitable: Awaitable[Any]) -> Any:
        """Await until completion or until the connection context ends."""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._ctx.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task.cancelled():
            return _STOPPED
        return task.result()

    async def _watch_inactivity(self) -> None:
        while True:
            remaining = self._last_activity + self._inactivity_timeout - time.monotonic()
            if remaining <= 0:
                with suppress(ConnectionClosedError):
                    await self.close(StatusCode.GOING_AWAY, "inactivity timeout")
                return
            try:
                await asyncio.wait_for(self._ctx.wait(), remaining)
                return
            except TimeoutError:
                continue

    def _other_tasks(self) -> set[asyncio.Task]:
        current = asyncio.current_task()
        return {task for task in self._tasks if task is not current}

    def _touch(self) -> None:
        self._last_activity = time.monotonic()