"""Routing, load balancing and proxying of HTTP, WebSocket and gRPC-gateway routes on aiohttp."""

__version__ = "0.1.0"

__all__ = [
    "balancing",
    "fileserver",
    "grpc_proxy",
    "http_pool",
    "http_proxy",
    "router",
    "routing",
    "settings",
    "websocket_pool",
    "websocket_proxy",
]