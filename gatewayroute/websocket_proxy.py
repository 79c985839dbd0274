"""Proxying of WebSocket routes to load-balanced backend WebSocket servers."""

from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import Awaitable, Callable, Sequence
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

import aiohttp
from aiohttp import WSMsgType, web

from gatewayroute.balancing import LoadBalancer, RequestStats, RoundRobin, get_request_stats
from gatewayroute.settings import GatewayConfig, RoutingRule
from gatewayroute.websocket_pool import WebSocketPool

logger = logging.getLogger(__name__)

_Socket = Union[web.WebSocketResponse, aiohttp.ClientWebSocketResponse]


def _clean_join(base: str, extra: str) -> str:
    joined = "/".join(part for part in (base, extra) if part)
    if not joined:
        return ""
    cleaned = posixpath.normpath(joined)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def backend_url(target: str, path: str, prefix: str) -> str:
    """Return the backend URL for a request path, with the WebSocket prefix removed."""
    if prefix and path.startswith(prefix):
        adjusted = path[len(prefix):]
        logger.info("Adjusted WebSocket path %s to %s (prefix %s)", path, adjusted, prefix)
    else:
        adjusted = path
        logger.warning("Request path %s lacks WebSocket prefix %s", path, prefix)
    if adjusted in ("", "/"):
        return target
    parts = urlsplit(target)
    joined = _clean_join(parts.path, adjusted)
    if parts.netloc and joined and not joined.startswith("/"):
        joined = "/" + joined
    return urlunsplit((parts.scheme, parts.netloc, joined, parts.query, parts.fragment))


def _balancer_for(name: str) -> LoadBalancer:
    if name != RoundRobin.name:
        logger.error("Failed to initialize load balancer %r, falling back to round robin", name)
    return RoundRobin()


class WebSocketProxy:
    """Upgrades client connections and relays messages to a backend connection."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        load_balancer: Optional[LoadBalancer] = None,
        pool: Optional[WebSocketPool] = None,
        stats: Optional[RequestStats] = None,
    ) -> None:
        self.config = config
        self.load_balancer = (
            load_balancer if load_balancer is not None else _balancer_for(config.routing.load_balancer)
        )
        self.pool = pool if pool is not None else WebSocketPool(config)
        self.stats = stats if stats is not None else get_request_stats()
        self.active_connections = 0

    def setup(self, app: web.Application, config: GatewayConfig) -> None:
        """Register a WebSocket route on the application for every WebSocket rule."""
        rules = config.routing.websocket_rules()
        if not rules:
            logger.info("No WebSocket routing rules found in configuration")
            return
        for path, target_rules in rules.items():
            logger.info("Setting up WebSocket proxy route %s -> %s", path, [r.target for r in target_rules])
            app.router.add_get(path, self.create_handler(target_rules, config))
        app.on_cleanup.append(self._on_cleanup)

    def create_handler(
        self, rules: Sequence[RoutingRule], config: GatewayConfig
    ) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
        """Return a handler that relays a client WebSocket to one of the rules' targets."""
        targets = [rule.target for rule in rules]
        prefix = config.websocket.prefix

        async def handler(request: web.Request) -> web.StreamResponse:
            client = web.WebSocketResponse()
            if not client.can_prepare(request).ok:
                logger.error("Failed to upgrade client connection on %s to WebSocket", request.path)
                return web.json_response({"error": "Failed to upgrade to WebSocket"}, status=500)
            await client.prepare(request)
            self.active_connections += 1
            try:
                await self._relay(request, client, targets, prefix)
            finally:
                self.active_connections -= 1
                await client.close()
            return client

        return handler

    async def _relay(
        self, request: web.Request, client: web.WebSocketResponse, targets: list[str], prefix: str
    ) -> None:
        target = self.load_balancer.select_target(targets, request)
        if not target:
            logger.warning("No available WebSocket target for %s", request.path)
            await client.send_str("No available target")
            return
        logger.debug("Selected WebSocket target %s", target)

        try:
            scheme = urlsplit(target).scheme
        except ValueError:
            scheme = ""
        if scheme not in ("ws", "wss"):
            self.stats.update_request_count(target, False)
            logger.error("Invalid WebSocket target URL %s", target)
            await client.send_str("Invalid target address")
            return

        full_target = backend_url(target, request.path, prefix)
        logger.debug("Forwarding WebSocket to %s", full_target)
        try:
            backend = await self.pool.get_conn(full_target)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            self.stats.update_request_count(target, False)
            logger.error("Failed to connect to backend WebSocket %s: %s", full_target, exc)
            await client.send_str("Backend connection failed")
            return

        pumps = {
            asyncio.create_task(self._pump(client, backend, "client-to-backend", target)),
            asyncio.create_task(self._pump(backend, client, "backend-to-client", target)),
        }
        done, pending = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            error = task.exception()
            if error is not None:
                self.stats.update_request_count(target, False)
                logger.error("WebSocket forwarding on %s to %s failed: %s", request.path, full_target, error)

    async def _pump(self, source: _Socket, dest: _Socket, direction: str, target: str) -> None:
        async for message in source:
            if message.type == WSMsgType.TEXT:
                await dest.send_str(message.data)
            elif message.type == WSMsgType.BINARY:
                await dest.send_bytes(message.data)
            elif message.type == WSMsgType.ERROR:
                raise source.exception() or ConnectionError(f"WebSocket error ({direction})")
            else:
                continue
            self.stats.update_request_count(target, True)

    async def close(self) -> None:
        """Close the connection pool."""
        await self.pool.close()
        logger.info("WebSocket proxy closed")

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.close()