"""Asyncio toolkit for WebSocket API gateways: connections, routing and backends."""

__version__ = "0.1.0"

__all__ = [
    "channel",
    "connection",
    "core",
    "http_backend",
    "loadbalancer",
    "queue_backend",
    "registry",
    "request",
    "router",
    "wrapper",
    "ws_backend",
]