"""Backend that forwards requests to an HTTP server."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import aiohttp

from .core import Connection, ConnectionClosedError, Context, MessageType, Request

_DEFAULT_TIMEOUT = 30.0
_DEFAULT_MAX_REQUESTS_PER_HOST = 50


@dataclass(frozen=True)
class HTTPRequest:
    """An outgoing HTTP request built from a client request."""

    url: str
    method: str = "GET"
    body: bytes | None = None
    headers: Mapping[str, str] | None = None


RequestFactory = Callable[[Request], "HTTPRequest | Awaitable[HTTPRequest]"]


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


class HTTPBackend:
    """Sends each request to an HTTP server and returns the response body as text.

    ``timeout`` is the total time allowed per request in seconds and
    ``max_requests_per_host`` caps concurrent connections per host (0 for no
    cap).
    """

    def __init__(
        self,
        factory: RequestFactory,
        timeout: float = _DEFAULT_TIMEOUT,
        max_requests_per_host: int = _DEFAULT_MAX_REQUESTS_PER_HOST,
    ) -> None:
        self.factory = factory
        self.timeout = timeout
        self.max_requests_per_host = max_requests_per_host
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> HTTPBackend:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def handle(self, conn: Connection, req: Request) -> None:
        """Perform the HTTP request and send its body to the connection."""
        http_req = self.factory(req)
        if inspect.isawaitable(http_req):
            http_req = await http_req

        body = await _run_within(req.context, self._fetch(http_req))

        try:
            await conn.send(MessageType.TEXT, body)
        except ConnectionClosedError:
            return

    async def close(self) -> None:
        """Release the underlying HTTP client."""
        if self._session is not None:
            session, self._session = self._session, None
            await session.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=0, limit_per_host=self.max_requests_per_host)
            self._session = aiohttp.ClientSession(
                connector=connector, timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def _fetch(self, http_req: HTTPRequest) -> bytes:
        session = self._get_session()
        async with session.request(
            http_req.method,
            http_req.url,
            data=http_req.body,
            headers=dict(http_req.headers) if http_req.headers else None,
        ) as resp:
            try:
                return await resp.read()
            except aiohttp.ClientPayloadError as exc:
                raise ConnectionError(f"failed to read response body: {exc}") from exc