"""Dispatcher that routes requests to backends by routing key."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from .core import (
    Connection,
    MessageType,
    RequestHandler,
    RequestMiddleware,
    RequestParser,
)

logger = logging.getLogger(__name__)


class DuplicateRouteError(ValueError):
    """A backend is already registered for a routing key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"backend for routing key {key} already exists")
        self.key = key


class RouterDispatcher:
    """Parses incoming messages and hands them to the matching backend."""

    def __init__(self, default_backend: RequestHandler, parser: RequestParser) -> None:
        self.default_backend = default_backend
        self._parser = parser
        self._backends: dict[str, RequestHandler] = {}
        self._middlewares: list[RequestMiddleware] = []

    def add_backend(self, backend: RequestHandler, routing_keys: Iterable[str]) -> None:
        """Register a backend for the given routing keys."""
        for key in routing_keys:
            if key in self._backends:
                raise DuplicateRouteError(key)
            self._backends[key] = backend

    async def dispatch(self, conn: Connection, msg_type: MessageType, data: bytes) -> None:
        """Parse a message and handle it; failures are logged, never raised."""
        try:
            req = self._parser(conn, conn.context, msg_type, data)
            if req is None:
                return
            key = req.routing_key()
            backend = self._backends.get(key, self.default_backend)
            handler = self._wrap(backend)
            try:
                await handler.handle(conn, req)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Error handling request (routing_key=%s): %s", key, exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Panic during request handling")

    def use(self, middleware: RequestMiddleware) -> None:
        """Add a middleware; middlewares run in the order they are added."""
        self._middlewares.append(middleware)

    def _wrap(self, endpoint: RequestHandler) -> RequestHandler:
        for middleware in reversed(self._middlewares):
            endpoint = middleware(endpoint)
        return endpoint