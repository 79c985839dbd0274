"""Validation of the route table and assembly of all proxy routes on an application."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Optional

from aiohttp import web

from gatewayroute.grpc_proxy import setup_grpc_proxy
from gatewayroute.http_proxy import HTTPProxy
from gatewayroute.router import Middleware, PathRouter
from gatewayroute.settings import GatewayConfig
from gatewayroute.websocket_proxy import WebSocketProxy

logger = logging.getLogger(__name__)

REGEX_CHARACTERS = ".*+?()|[]^$\\"
REGEX_ENGINES = frozenset({"trie-regexp", "regexp"})


class RoutingConfigError(ValueError):
    """The route table cannot be served by the configured routing engine."""


def is_regex_pattern(path: str) -> bool:
    """Whether the path contains regular expression characters."""
    return any(char in REGEX_CHARACTERS for char in path)


def validate_rules(config: GatewayConfig) -> None:
    """Check that every non-gRPC route suits the configured engine.

    Raises RoutingConfigError for a regular expression path under an engine without regex support.
    """
    engine = config.routing.engine
    for path, endpoints in config.routing.rules.items():
        for endpoint in endpoints:
            if endpoint.protocol == "grpc":
                continue
            if engine == "trie" and is_regex_pattern(path):
                raise RoutingConfigError(
                    f"trie routing engine does not support regular expression path {path!r}; "
                    "use the 'trie-regexp' or 'regexp' engine"
                )
            if is_regex_pattern(path) and engine not in REGEX_ENGINES:
                raise RoutingConfigError(
                    f"routing engine {engine!r} is incompatible with regular expression path {path!r}; "
                    "use the 'trie-regexp' or 'regexp' engine"
                )


def setup_routing(
    app: web.Application,
    http_proxy: HTTPProxy,
    config: GatewayConfig,
    middlewares: Optional[Mapping[str, Middleware]] = None,
) -> PathRouter:
    """Validate the rules and register HTTP, gRPC and WebSocket proxy routes."""
    logger.info("Loading routing rules from configuration: %s", list(config.routing.rules))
    validate_rules(config)

    router = PathRouter()
    logger.info("Initialized routing engine %s", config.routing.engine)
    router.setup(app, http_proxy, config, middlewares or {})

    if config.grpc.enabled and config.routing.grpc_rules():
        setup_grpc_proxy(config, app, None)

    if config.websocket.enabled and config.routing.websocket_rules():
        WebSocketProxy(config).setup(app, config)
        logger.info("WebSocket proxy configured successfully")
    return router