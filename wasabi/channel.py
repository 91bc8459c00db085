"""A WebSocket endpoint that feeds accepted connections to a registry."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from fnmatch import fnmatchcase
from typing import Any, Protocol
from urllib.parse import urlsplit

from aiohttp import web

from .core import Connection, Context, MessageType, Middleware

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class _Dispatcher(Protocol):
    async def dispatch(self, conn: Connection, msg_type: MessageType, data: bytes) -> None: ...


class _Registry(Protocol):
    def can_accept(self) -> bool: ...

    async def handle_connection(self, ctx: Context, ws: Any, on_message: Any) -> None: ...

    async def close(self, ctx: Context | None = None) -> None: ...


def _header_tokens(value: str) -> set[str]:
    return {token.strip().lower() for token in value.split(",") if token.strip()}


class Channel:
    """Serves WebSocket connections on a path and dispatches their messages.

    ``origin_patterns`` are glob patterns matched against the host of a
    cross-origin ``Origin`` header (or against ``scheme://host`` when the
    pattern has a scheme). ``compression`` enables per-message deflate;
    ``compression_threshold`` records the smallest payload meant to be
    compressed.
    """

    def __init__(
        self,
        path: str,
        dispatcher: _Dispatcher,
        registry: _Registry,
        origin_patterns: Iterable[str] = ("*",),
        compression: bool = False,
        compression_threshold: int = 0,
    ) -> None:
        self.path = path
        self.dispatcher = dispatcher
        self.registry = registry
        self.origin_patterns = tuple(origin_patterns)
        self.compression = compression
        self.compression_threshold = compression_threshold
        self._middlewares: list[Middleware] = []

    @property
    def middlewares(self) -> tuple[Middleware, ...]:
        return tuple(self._middlewares)

    def handler(self) -> Handler:
        """Return the request handler with all middlewares applied."""
        handler: Handler = self._serve
        for middleware in reversed(self._middlewares):
            handler = middleware(handler)
        return handler

    def use(self, middleware: Middleware) -> None:
        """Add a middleware; the first added is the outermost."""
        self._middlewares.append(middleware)

    async def close(self, ctx: Context | None = None) -> None:
        """Close the registry and every connection in it."""
        await self.registry.close(ctx)

    async def _serve(self, request: web.Request) -> web.StreamResponse:
        if not self.registry.can_accept():
            return web.Response(status=503, text="Connection limit reached")

        rejection = self._check_handshake(request)
        if rejection is not None:
            return rejection

        ws = web.WebSocketResponse(compress=self.compression)
        if not ws.can_prepare(request).ok:
            return web.Response(status=400, text="WebSocket protocol violation")

        if not self._origin_allowed(request):
            origin = request.headers.get("Origin", "")
            return web.Response(
                status=403, text=f"request Origin {origin!r} is not authorized for Host"
            )

        await ws.prepare(request)
        ctx = Context()
        try:
            await self.registry.handle_connection(ctx, ws, self.dispatcher.dispatch)
        finally:
            ctx.cancel()
        return ws

    @staticmethod
    def _check_handshake(request: web.Request) -> web.Response | None:
        connection = request.headers.get("Connection", "")
        if "upgrade" not in _header_tokens(connection):
            return web.Response(
                status=426,
                text=f"WebSocket protocol violation: Connection header {connection!r} "
                "does not contain Upgrade",
                headers={"Connection": "Upgrade", "Upgrade": "websocket"},
            )
        upgrade = request.headers.get("Upgrade", "")
        if "websocket" not in _header_tokens(upgrade):
            return web.Response(
                status=426,
                text=f"WebSocket protocol violation: Upgrade header {upgrade!r} "
                "does not contain websocket",
                headers={"Connection": "Upgrade", "Upgrade": "websocket"},
            )
        if request.method != "GET":
            return web.Response(status=405, text="WebSocket protocol violation: handshake must be GET")
        return None

    def _origin_allowed(self, request: web.Request) -> bool:
        origin = request.headers.get("Origin")
        if not origin:
            return True
        parsed = urlsplit(origin)
        host = parsed.netloc
        if not host:
            return False
        if host.lower() == (request.host or "").lower():
            return True
        for pattern in self.origin_patterns:
            target = f"{parsed.scheme}://{host}" if "://" in pattern else host
            if fnmatchcase(target.lower(), pattern.lower()):
                return True
        return False