"""Registration of HTTP proxy routes, by exact path or by regular expression."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Optional

from aiohttp import web

from gatewayroute.http_proxy import HTTPProxy
from gatewayroute.settings import GatewayConfig, RoutingRule

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
Middleware = Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]

REGEX_ENGINE = "regex"


def _join_prefix(prefix: str, path: str) -> str:
    if not prefix or prefix == "/":
        return path
    return prefix.rstrip("/") + path


def _resolve_middlewares(
    names: Sequence[str], registry: Mapping[str, Middleware], path: str
) -> list[Middleware]:
    resolved = []
    for name in names:
        middleware = registry.get(name)
        if middleware is None:
            logger.warning("Middleware %r configured for %s but not found in registry", name, path)
            continue
        resolved.append(middleware)
    return resolved


def _bind(middleware: Middleware, inner: Handler) -> Handler:
    async def call(request: web.Request) -> web.StreamResponse:
        return await middleware(request, inner)

    return call


def _chain(middlewares: Sequence[Middleware], handler: Handler) -> Handler:
    """Wrap the handler so that the middlewares run first, in order.

    A middleware that returns a response without calling its handler stops the chain.
    """
    for middleware in reversed(middlewares):
        handler = _bind(middleware, handler)
    return handler


class Router(ABC):
    """A routing engine that registers HTTP proxy routes on an application."""

    @abstractmethod
    def setup(
        self,
        app: web.Application,
        http_proxy: HTTPProxy,
        config: GatewayConfig,
        middlewares: Mapping[str, Middleware],
    ) -> None:
        """Register the configured HTTP routes on the application."""


@dataclass(frozen=True)
class _RegexRoute:
    pattern: re.Pattern[str]
    handler: Handler


class PathRouter(Router):
    """Registers exact paths as routes; regex rules match requests no route handled."""

    def __init__(self) -> None:
        self._regex_routes: list[_RegexRoute] = []
        logger.info("PathRouter initialized")

    def setup(
        self,
        app: web.Application,
        http_proxy: HTTPProxy,
        config: GatewayConfig,
        middlewares: Mapping[str, Middleware],
    ) -> None:
        rules = config.routing.http_rules()
        if not rules:
            logger.warning("No HTTP routing rules found in configuration")
            return

        mode = config.routing.engine
        prefix = config.routing.prefix
        for path, target_rules in rules.items():
            logger.info("Registering HTTP route %s -> %s", path, [rule.target for rule in target_rules])
            chain = _resolve_middlewares(target_rules[0].middlewares, middlewares, path)
            handler = _chain(chain, http_proxy.create_handler(target_rules))
            if target_rules[0].is_regex and mode == REGEX_ENGINE:
                try:
                    pattern = re.compile("^" + re.escape(_join_prefix(prefix, "")) + path + "$")
                except re.error as exc:
                    logger.error("Failed to compile regular expression for route %s: %s", path, exc)
                    continue
                self._regex_routes.append(_RegexRoute(pattern, handler))
                logger.info("Registered regex route %s", path)
            else:
                app.router.add_route("*", _join_prefix(prefix, path), handler)

        if self._regex_routes:
            app.middlewares.append(self._regex_fallback)

    @web.middleware
    async def _regex_fallback(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if not isinstance(request.match_info.http_exception, web.HTTPNotFound):
            return await handler(request)
        for route in self._regex_routes:
            if route.pattern.fullmatch(request.path):
                logger.info("Regex route matched %s", request.path)
                return await route.handler(request)
        return web.json_response({"error": 404}, status=404)


class RegexpRouter:
    """Matches every request path against anchored regular expressions."""

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config
        self._patterns: dict[str, re.Pattern[str]] = {}

    def register_rule(self, path: str) -> None:
        """Compile the path as an anchored pattern; an invalid pattern is logged and skipped."""
        try:
            compiled = re.compile("^" + path + "$")
        except re.error as exc:
            logger.error("Failed to compile regular expression for route %s: %s", path, exc)
            return
        self._patterns[path] = compiled
        logger.info(
            "Registered route %s in RegexpRouter -> %s", path, self.config.routing.rules.get(path)
        )

    def match(self, path: str) -> Optional[list[RoutingRule]]:
        """Return the rules of the first pattern matching the path, or None."""
        for pattern, compiled in self._patterns.items():
            if compiled.fullmatch(path):
                return self.config.routing.rules.get(pattern, [])
        return None

    def setup(self, app: web.Application, http_proxy: HTTPProxy, config: GatewayConfig) -> None:
        """Register the HTTP rules and route every request through them."""
        rules = config.routing.http_rules()
        if not rules:
            logger.warning("No HTTP routing rules found in configuration")
            return
        for path in rules:
            self.register_rule(path)

        @web.middleware
        async def route(request: web.Request, handler: Handler) -> web.StreamResponse:
            target_rules = self.match(request.path)
            if target_rules is None:
                logger.warning("No matching route found for %s %s", request.method, request.path)
                return web.json_response({"error": "Route not found"}, status=404)
            logger.info("Matched route for %s", request.path)
            return await http_proxy.create_handler(target_rules)(request)

        app.middlewares.append(route)