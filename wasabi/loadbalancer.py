"""Weighted least-busy load balancer over request handlers."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .core import Connection, Request, RequestHandler

_MIN_REQUIRED_BACKENDS = 2
_MAX_INT32 = 2**31 - 1


class NotEnoughBackendsError(ValueError):
    """The load balancer was given fewer than two backends."""

    def __init__(self) -> None:
        super().__init__("load balancer requires at least 2 backends")


@dataclass
class LoadBalancerNode:
    """A backend with its weight and number of requests in flight."""

    handler: RequestHandler
    weight: int
    active: int = 0


class LoadBalancer:
    """Sends each request to the backend with the lowest load per unit of weight.

    Backends with zero weight are never chosen.
    """

    def __init__(self, backends: Iterable[tuple[RequestHandler, int]]) -> None:
        nodes = tuple(LoadBalancerNode(handler, weight) for handler, weight in backends)
        if len(nodes) < _MIN_REQUIRED_BACKENDS:
            raise NotEnoughBackendsError()
        self.nodes = nodes

    async def handle(self, conn: Connection, req: Request) -> Any:
        node = self._least_busy_node()
        node.active += 1
        try:
            return await node.handler.handle(conn, req)
        finally:
            node.active -= 1

    def _least_busy_node(self) -> LoadBalancerNode:
        best: LoadBalancerNode | None = None
        min_load = _MAX_INT32
        for node in self.nodes:
            if node.weight == 0:
                continue
            load = int(node.active / node.weight)
            if load < min_load:
                min_load = load
                best = node
        if best is None:
            raise LookupError("no backend with a non-zero weight is available")
        return best