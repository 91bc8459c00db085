# wasabi

`wasabi` is an asyncio toolkit for building WebSocket API gateways on top of
`aiohttp`. Clients connect over WebSocket; every incoming message is parsed
into a request, routed by its routing key, passed through middleware and
handed to a backend that produces the reply.

## Installation

From a checkout of the project:

```
pip install .
```

The only runtime dependency is `aiohttp`.

## Building blocks

### Core types (`wasabi.core`)

- `MessageType` – `TEXT` or `BINARY` WebSocket frames.
- `StatusCode` – WebSocket close codes (`NORMAL_CLOSURE`, `GOING_AWAY`,
  `INTERNAL_ERROR`, `SERVICE_RESTART`, `TRY_AGAIN_LATER`, ...).
- `Context(parent=None, timeout=None)` – a cancellable scope with an optional
  timeout in seconds. A child inherits its parent's deadline and is cancelled
  with it. `cancel()` cancels it, `await wait()` waits until it is done, and
  `error` / `done` tell why and whether it ended.
- `ConnectionClosedError`, `ContextCancelledError`, `DeadlineExceededError` –
  raised when a connection is gone, or when a context was cancelled or ran
  past its deadline.
- `Connection`, `Request`, `RequestHandler` – the protocols that connections,
  requests and backends follow. `RequestHandlerFunc(func)` turns a coroutine
  function `func(conn, req)` into a handler.

### Requests and routing

- `wasabi.request.RawRequest(ctx, msg_type, data)` – a request that holds a
  message as received. `routing_key()` returns `"text"` or `"binary"`;
  `with_context(ctx)` replaces the context and returns the same request.
  A `None` context raises `ValueError`.
- `wasabi.router.RouterDispatcher(default_backend, parser)` – `parser(conn,
  ctx, msg_type, data)` turns a message into a request (or `None` to drop it).
  `add_backend(backend, routing_keys)` maps keys to a backend; a key
  registered twice raises `DuplicateRouteError`. Requests with an unknown key
  go to the default backend. `use(middleware)` adds a function that takes a
  handler and returns a handler; the first one added is the outermost.
  `await dispatch(conn, msg_type, data)` never raises: errors from the parser
  or the backend are logged.

### Connections

- `wasabi.connection.WebSocketConnection(ctx, ws, on_message,
  concurrency_limit=25, inactivity_timeout=0.0)` – one client connection over
  an aiohttp WebSocket. `await handle_requests()` reads messages and runs
  `on_message(conn, msg_type, data)` (plain or coroutine function) for each,
  with at most `concurrency_limit` running at once. With a positive
  `inactivity_timeout` the connection closes itself with `GOING_AWAY` when
  nothing is read or sent for that long. `send()` raises
  `ConnectionClosedError` once the connection has ended. `close(status,
  reason, closing_ctx=None)` closes it gracefully, waiting for requests in
  flight until `closing_ctx` ends; `terminate()` ends it at once.
- `wasabi.registry.ConnectionRegistry(frame_size_limit=32768,
  concurrency_limit=25, inactivity_timeout=0.0, on_connect=None,
  on_disconnect=None, connection_limit=-1)` – keeps track of live connections.
  `await handle_connection(ctx, ws, on_message)` registers a socket and serves
  it until it ends; it is refused with `SERVICE_RESTART` after the registry
  has been closed and with `TRY_AGAIN_LATER` over the connection limit.
  Messages larger than `frame_size_limit` close the connection with
  `MESSAGE_TOO_BIG` (`-1` disables the limit). `can_accept()`,
  `get_connection(conn_id)` and `await close(ctx=None)` round it off; the
  hooks may be plain or coroutine functions.
- `wasabi.wrapper.ConnectionWrapper(connection, on_send=None, on_close=None)`
  – wraps a connection so that `send` and `close` go through callbacks that
  receive the wrapped connection.
- `wasabi.channel.Channel(path, dispatcher, registry, origin_patterns=("*",),
  compression=False, compression_threshold=0)` – `handler()` returns an
  aiohttp request handler that upgrades requests to WebSocket and passes them
  to the registry, with every dispatched message going to
  `dispatcher.dispatch`. It answers 503 when the registry cannot accept more
  connections, 426 or 405 for requests that are not a WebSocket handshake, and
  403 when a cross-origin `Origin` header matches none of the glob patterns.
  `compression` turns on per-message deflate; `compression_threshold` is only
  recorded. `use(middleware)` wraps the handler, the first added outermost;
  `await close(ctx=None)` closes the registry.

### Backends

- `wasabi.http_backend.HTTPBackend(factory, timeout=30.0,
  max_requests_per_host=50)` – the factory (plain or coroutine function) turns
  a request into an `HTTPRequest(url, method="GET", body=None, headers=None)`;
  the response body is sent back to the client as a text message. If the
  request's context ends first, its error is raised. The backend keeps an
  `aiohttp` session; release it with `await close()` or use the backend as an
  async context manager.
- `wasabi.ws_backend.WSBackend(url, factory, dialer=dial)` – opens one
  upstream WebSocket per client connection and writes each request over it as
  produced by `factory(req) -> (msg_type, data)`. Every upstream message is
  relayed back to the client; when either side ends, both are closed with the
  upstream close code. A failed dial closes the client with `INTERNAL_ERROR`.
  `connections` shows the open upstream sockets by client id.
- `wasabi.queue_backend.QueueBackend(on_request)` – calls
  `on_request(conn, req, request_id)` and waits for
  `on_response(request_id, msg_type, data)` to supply the answer, which is
  sent to the client. Responses nobody waits for are dropped; if the request's
  context ends first, its error is raised.
- `wasabi.loadbalancer.LoadBalancer(backends)` – `backends` is an iterable of
  `(handler, weight)` pairs, at least two of them (otherwise
  `NotEnoughBackendsError`). Each request goes to the backend with the fewest
  requests in flight per unit of weight; zero-weight backends are skipped.

Failures in backends are raised as exceptions; only `ConnectionClosedError`
while sending the reply is swallowed.

## Example

```python
from aiohttp import web

from wasabi.channel import Channel
from wasabi.core import RequestHandlerFunc
from wasabi.registry import ConnectionRegistry
from wasabi.request import RawRequest
from wasabi.router import RouterDispatcher


async def echo(conn, req):
    await conn.send(req.msg_type, req.data)


def parse(conn, ctx, msg_type, data):
    return RawRequest(ctx, msg_type, data)


dispatcher = RouterDispatcher(RequestHandlerFunc(echo), parse)
channel = Channel("/ws", dispatcher, ConnectionRegistry(connection_limit=1000))

app = web.Application()
app.router.add_get(channel.path, channel.handler())


async def shutdown(app):
    await channel.close()


app.on_shutdown.append(shutdown)
web.run_app(app)
```

## What the package does not do

`wasabi` is a library. It has no command and no server of its own, and reads
no configuration files: you mount `Channel.handler()` on an aiohttp
application and run that application yourself.

## Running the tests

```
pip install -e ".[test]"
pytest
```