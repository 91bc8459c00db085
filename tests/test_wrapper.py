import pytest

from wasabi.core import Context, MessageType, StatusCode
from wasabi.wrapper import ConnectionWrapper


class Underlying:
    id = "testID"

    def __init__(self):
        self.context = Context()
        self.log = []

    async def send(self, msg_type, data):
        self.log.append(("send", msg_type, data))

    async def close(self, status, reason, closing_ctx=None):
        self.log.append(("close", status, reason, closing_ctx))


def test_new_wrapper_holds_connection():
    conn = Underlying()
    wrapper = ConnectionWrapper(conn)
    assert wrapper.connection is conn
    assert (wrapper.on_send, wrapper.on_close) == (None, None)


def test_id_and_context_come_from_connection():
    conn = Underlying()
    wrapper = ConnectionWrapper(conn)
    assert (wrapper.id, wrapper.context) == ("testID", conn.context)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "operation, args",
    [
        ("send", (MessageType.TEXT, b"test message")),
        ("close", (StatusCode.NORMAL_CLOSURE, "test reason", Context())),
    ],
)
@pytest.mark.parametrize("wrapped", [True, False])
async def test_operation_goes_through_hook_when_set(operation, args, wrapped):
    conn = Underlying()
    hooked = []

    async def hook(target, *hook_args, **hook_kwargs):
        hooked.append((target, *hook_args, *hook_kwargs.values()))

    options = {f"on_{operation}": hook} if wrapped else {}
    wrapper = ConnectionWrapper(conn, **options)
    await getattr(wrapper, operation)(*args)

    expected = ([(conn, *args)], []) if wrapped else ([], [(operation, *args)])
    assert (hooked, conn.log) == expected


@pytest.mark.asyncio
async def test_wrapper_errors_propagate():
    async def on_send(target, msg_type, data):
        raise RuntimeError("boom")

    wrapper = ConnectionWrapper(Underlying(), on_send=on_send)
    with pytest.raises(RuntimeError, match="boom"):
        await wrapper.send(MessageType.TEXT, b"x")