import asyncio
from collections import namedtuple

import pytest
from aiohttp import WSMsgType

from wasabi.connection import WebSocketConnection
from wasabi.core import ConnectionClosedError, Context, MessageType, StatusCode

Frame = namedtuple("Frame", "type data extra")


class FakeWebSocket:
    def __init__(self):
        self._incoming = asyncio.Queue()
        self.sent = []
        self.close_calls = []
        self.closed = False
        self.fail_sends = False

    def feed(self, msg_type, data):
        self._incoming.put_nowait(Frame(msg_type, data, None))

    async def receive(self):
        if self.closed:
            return Frame(WSMsgType.CLOSED, None, None)
        return await self._incoming.get()

    async def _write(self, msg_type, data):
        if self.closed or self.fail_sends:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append((msg_type, data))

    async def send_str(self, data):
        await self._write(WSMsgType.TEXT, data)

    async def send_bytes(self, data):
        await self._write(WSMsgType.BINARY, data)

    async def close(self, *, code=1000, message=b""):
        self.close_calls.append((code, message))
        if self.closed:
            return False
        self.closed = True
        self.feed(WSMsgType.CLOSED, None)
        return True


def make_conn(on_message=None, limit=1, timeout=0, parent=None):
    ws = FakeWebSocket()
    ctx = parent if parent is not None else Context()
    return WebSocketConnection(ctx, ws, on_message, limit, timeout), ws


def blocking_handler():
    """A message callback that records data and waits until released."""
    release = asyncio.Event()
    started = []

    async def on_message(conn, msg_type, data):
        started.append(data)
        await release.wait()

    return on_message, started, release


async def within(awaitable):
    return await asyncio.wait_for(awaitable, 1)


async def until(predicate):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await within(poll())


async def run(conn):
    task = asyncio.create_task(conn.handle_requests())
    await asyncio.sleep(0)
    return task


async def shutdown(conn, task):
    await conn.terminate()
    await within(task)


async def busy_connection():
    """A running connection with one message held in its callback."""
    on_message, started, release = blocking_handler()
    conn, ws = make_conn(on_message, limit=2)
    task = await run(conn)
    ws.feed(WSMsgType.TEXT, "work")
    await until(lambda: started)
    return conn, ws, task, release


@pytest.mark.asyncio
async def test_id_is_unique_and_non_empty():
    first, _ = make_conn()
    second, _ = make_conn()
    assert first.id != ""
    assert first.id != second.id


@pytest.mark.asyncio
async def test_context_derives_from_parent():
    parent = Context()
    conn, _ = make_conn(parent=parent)
    assert conn.context.done is False
    parent.cancel()
    assert conn.context.done is True


@pytest.mark.asyncio
async def test_handle_requests_calls_callback():
    received = []

    async def on_message(conn, msg_type, data):
        received.append((conn, msg_type, data))

    conn, ws = make_conn(on_message)
    task = await run(conn)
    ws.feed(WSMsgType.TEXT, "test message")
    ws.feed(WSMsgType.BINARY, b"\x00\x01")

    await until(lambda: len(received) == 2)
    assert received == [
        (conn, MessageType.TEXT, b"test message"),
        (conn, MessageType.BINARY, b"\x00\x01"),
    ]
    await shutdown(conn, task)


@pytest.mark.asyncio
async def test_concurrency_limit_holds_back_reading():
    on_message, started, release = blocking_handler()
    conn, ws = make_conn(on_message)
    task = await run(conn)
    ws.feed(WSMsgType.TEXT, "one")
    ws.feed(WSMsgType.TEXT, "two")

    await until(lambda: len(started) == 1)
    await asyncio.sleep(0.02)
    assert (started, conn.context.done) == ([b"one"], False)

    release.set()
    await until(lambda: len(started) == 2)
    assert started == [b"one", b"two"]

    await shutdown(conn, task)
    assert (conn.context.done, ws.closed) == (True, True)


@pytest.mark.asyncio
async def test_send_text_and_binary():
    conn, ws = make_conn()
    await conn.send(MessageType.TEXT, b"test message")
    await conn.send(MessageType.BINARY, b"\x01\x02")
    assert ws.sent == [(WSMsgType.TEXT, "test message"), (WSMsgType.BINARY, b"\x01\x02")]


@pytest.mark.asyncio
@pytest.mark.parametrize("broken_by_close", [False, True])
async def test_send_on_unusable_socket_raises_connection_closed(broken_by_close):
    conn, ws = make_conn()
    if broken_by_close:
        await conn.close(StatusCode.NORMAL_CLOSURE, "bye")
    else:
        ws.fail_sends = True
    with pytest.raises(ConnectionClosedError):
        await conn.send(MessageType.TEXT, b"hello")


@pytest.mark.asyncio
async def test_terminate_stops_handle_requests():
    conn, ws = make_conn()
    await shutdown(conn, await run(conn))
    assert (conn.context.done, ws.closed) == (True, True)


@pytest.mark.asyncio
@pytest.mark.parametrize("closing_ctx", [Context, None])
async def test_close_stops_handle_requests(closing_ctx):
    conn, ws = make_conn()
    task = await run(conn)
    args = () if closing_ctx is None else (closing_ctx(),)

    await conn.close(StatusCode.NORMAL_CLOSURE, "test reason", *args)
    await within(task)

    assert ws.close_calls[0] == (1000, b"test reason")
    assert conn.context.done is True


@pytest.mark.asyncio
async def test_close_waits_for_pending_requests():
    conn, ws, task, release = await busy_connection()

    closing = asyncio.create_task(conn.close(StatusCode.NORMAL_CLOSURE, "bye", Context()))
    await asyncio.sleep(0.02)
    assert (closing.done(), ws.close_calls) == (False, [])

    release.set()
    await within(closing)
    await within(task)
    assert ws.close_calls[0] == (1000, b"bye")


@pytest.mark.asyncio
async def test_close_with_cancelled_context_does_not_wait():
    conn, ws, task, release = await busy_connection()

    closing_ctx = Context()
    closing_ctx.cancel()
    await within(conn.close(StatusCode.NORMAL_CLOSURE, "now", closing_ctx))
    assert ws.close_calls[0] == (1000, b"now")

    release.set()
    await within(task)


@pytest.mark.asyncio
@pytest.mark.parametrize("first_close", ["terminate", "close"])
async def test_second_close_raises(first_close):
    conn, _ = make_conn()
    if first_close == "terminate":
        await conn.terminate()
    else:
        await conn.close(StatusCode.NORMAL_CLOSURE, "first")

    with pytest.raises(ConnectionClosedError):
        await conn.close(StatusCode.NORMAL_CLOSURE, "second", Context())


@pytest.mark.asyncio
async def test_inactivity_timeout_closes_connection():
    conn, ws = make_conn(timeout=0.01)
    await within(conn.handle_requests())
    assert ws.close_calls[0] == (StatusCode.GOING_AWAY, b"inactivity timeout")
    assert conn.context.done is True


@pytest.mark.asyncio
async def test_inactivity_watcher_stops_after_close():
    conn, ws = make_conn(timeout=0.01)
    closing_ctx = Context()
    closing_ctx.cancel()
    await conn.close(StatusCode.NORMAL_CLOSURE, "", closing_ctx)

    await asyncio.sleep(0.05)
    assert ws.close_calls == [(1000, b"")]


@pytest.mark.asyncio
async def test_message_over_read_limit_closes_connection():
    received = []

    async def on_message(conn, msg_type, data):
        received.append(data)

    conn, ws = make_conn(on_message)
    conn.read_limit = 4
    ws.feed(WSMsgType.TEXT, "too long")

    await within(conn.handle_requests())

    assert ws.close_calls[0] == (StatusCode.MESSAGE_TOO_BIG, b"read limited at 4 bytes")
    assert received == []