"""Reverse proxying of HTTP routes to load-balanced backend targets."""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import threading
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp
from aiohttp import web

from gatewayroute.balancing import LoadBalancer, RequestStats, RoundRobin, get_request_stats
from gatewayroute.http_pool import HostClient, HTTPConnectionPool
from gatewayroute.settings import GatewayConfig, Grayscale, RoutingRule

logger = logging.getLogger(__name__)

DEFAULT_ENV = "stable"
CANARY_ENV = "canary"

_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
_SKIP_REQUEST_HEADERS = _HOP_BY_HOP | {"host", "content-length"}
_SKIP_RESPONSE_HEADERS = _HOP_BY_HOP | {"content-length"}

_BALANCERS: dict[str, Callable[[], LoadBalancer]] = {"round_robin": RoundRobin}

Selection = Optional[tuple[str, str]]
TargetSelector = Callable[[Any, Sequence[RoutingRule]], Any]
PoolForwarder = Callable[[web.Request, str, str], Awaitable[web.StreamResponse]]


class ProxyError(Exception):
    """A request could not be forwarded to its backend target."""

    def __init__(self, message: str, target: str, *, plain_text: bool = False, status: int = 502) -> None:
        super().__init__(message)
        self.message = message
        self.target = target
        self.plain_text = plain_text
        self.status = status

    def to_response(self) -> web.Response:
        if self.plain_text:
            return web.Response(status=self.status, text=self.message)
        return web.json_response({"error": self.message}, status=self.status)


def single_joining_slash(a: str, b: str) -> str:
    """Join two path segments so that exactly one slash separates them."""
    a_slash = a.endswith("/")
    b_slash = b.startswith("/")
    if a_slash and b_slash:
        return a + b[1:]
    if not a_slash and not b_slash:
        return a + "/" + b
    return a + b


def weighted_random_select(rules: Sequence[RoutingRule]) -> Optional[RoutingRule]:
    """Pick a rule at random in proportion to its weight.

    Raises ValueError when there are several rules whose weights sum to zero.
    """
    if not rules:
        return None
    if len(rules) == 1:
        return rules[0]
    total = sum(rule.weight for rule in rules)
    point = random.randrange(total)
    cumulative = 0
    for rule in rules:
        cumulative += rule.weight
        if point < cumulative:
            return rule
    return rules[-1]


def env_from_headers(headers: Mapping[str, str]) -> str:
    """Return the environment requested through the X-Env header."""
    return headers.get("X-Env") or DEFAULT_ENV


def direct_target_url(target_url: str, path: str, query: str = "") -> str:
    """Build the URL a request is forwarded to when proxying directly."""
    parts = urlsplit(target_url)
    return urlunsplit((parts.scheme, parts.netloc, single_joining_slash(parts.path, path), query, ""))


def pool_request_url(target: str, path: str, query: str = "") -> str:
    """Build the URL a request is forwarded to through the connection pool."""
    for scheme in ("http://", "https://"):
        if target.startswith(scheme):
            target = target[len(scheme):]
            break
    url = "http://" + target + path
    if query:
        url += "?" + query
    return url


def _make_load_balancer(name: str) -> LoadBalancer:
    factory = _BALANCERS.get(name)
    if factory is None:
        logger.error("Failed to initialize load balancer %r, falling back to round robin", name)
        return RoundRobin()
    return factory()


def _filter_rules(rules: Sequence[RoutingRule], env: str) -> list[RoutingRule]:
    if env == CANARY_ENV:
        canary = [rule for rule in rules if rule.env == CANARY_ENV]
        if not canary:
            logger.warning("No canary targets available, falling back to all rules")
            return list(rules)
        return canary
    return list(rules)


def _filter_rules_with_fallback(
    rules: Sequence[RoutingRule], env: str, grayscale: Grayscale
) -> list[RoutingRule]:
    filtered = _filter_rules(rules, env)
    if not filtered and env == grayscale.canary_env:
        logger.warning("No canary targets available, falling back to default env")
        return _filter_rules(rules, grayscale.default_env)
    return filtered


def _forward_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    return [(key, value) for key, value in headers if key.lower() not in _SKIP_REQUEST_HEADERS]


def _set_header(headers: list[tuple[str, str]], name: str, value: str) -> None:
    lowered = name.lower()
    headers[:] = [(key, val) for key, val in headers if key.lower() != lowered]
    headers.append((name, value))


def _build_response(status: int, headers: Iterable[tuple[str, str]], payload: bytes) -> web.Response:
    response = web.Response(status=status, body=payload)
    replaced: set[str] = set()
    for key, value in headers:
        lowered = key.lower()
        if lowered in _SKIP_RESPONSE_HEADERS:
            continue
        if lowered in replaced:
            response.headers.add(key, value)
        else:
            response.headers[key] = value
            replaced.add(lowered)
    return response


class HTTPProxy:
    """Selects a backend for each request and forwards it there."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        load_balancer: Optional[LoadBalancer] = None,
        target_selector: Optional[TargetSelector] = None,
        pool_forwarder: Optional[PoolForwarder] = None,
        stats: Optional[RequestStats] = None,
    ) -> None:
        self.config = config
        self.load_balancer: Optional[LoadBalancer] = (
            load_balancer if load_balancer is not None else _make_load_balancer(config.routing.load_balancer)
        )
        self.http_pool = HTTPConnectionPool(config)
        self.http_pool_enabled = config.performance.http_pool_enabled
        self.stats = stats if stats is not None else get_request_stats()
        self._target_selector = target_selector
        self._pool_forwarder = pool_forwarder
        self._lock = threading.Lock()
        self._direct_session: Optional[aiohttp.ClientSession] = None
        self._pool_sessions: dict[str, aiohttp.ClientSession] = {}
        grayscale = config.routing.grayscale
        logger.info("HTTP TCP connection pool %s", "enabled" if self.http_pool_enabled else "disabled")
        logger.info(
            "Grayscale enabled=%s weighted_random=%s default_env=%s canary_env=%s",
            grayscale.enabled,
            grayscale.weighted_random,
            grayscale.default_env,
            grayscale.canary_env,
        )

    def load_balancer_type(self) -> str:
        """Name of the active load balancer, or an empty string when there is none."""
        balancer = self.load_balancer
        return balancer.name if balancer is not None else ""

    def refresh_load_balancer(self, config: GatewayConfig) -> None:
        """Replace the load balancer with one built from the given configuration."""
        new_balancer = _make_load_balancer(config.routing.load_balancer)
        with self._lock:
            old_balancer, self.load_balancer = self.load_balancer, new_balancer
            self.config = config
        logger.info("HTTPProxy load balancer refreshed to %s", config.routing.load_balancer)
        if old_balancer is not None:
            old_balancer.stop()

    def setup(self, app: web.Application, config: GatewayConfig) -> None:
        """Register a proxy route on the application for every HTTP rule."""
        rules = config.routing.http_rules()
        if not rules:
            logger.warning("No HTTP routing rules found in configuration")
            return
        for path, target_rules in rules.items():
            logger.info("Configuring HTTP proxy route %s -> %s", path, [r.target for r in target_rules])
            app.router.add_route("*", path, self.create_handler(target_rules))
        app.on_cleanup.append(self._on_cleanup)

    def create_handler(self, rules: Sequence[RoutingRule]) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
        """Return a request handler that forwards to one of the given rules."""
        rules = list(rules)

        async def handler(request: web.Request) -> web.StreamResponse:
            selection = await self._choose(request, rules)
            if not selection or not selection[0]:
                logger.warning(
                    "No target available for %s (env %s)", request.path, env_from_headers(request.headers)
                )
                return web.json_response({"error": "No available target"}, status=503)
            target, env = selection
            try:
                if self.http_pool_enabled:
                    if self._pool_forwarder is not None:
                        return await self._pool_forwarder(request, target, env)
                    return await self._proxy_with_pool(request, target, env)
                return await self._proxy_direct(request, target, env)
            except ProxyError as exc:
                self.stats.update_request_count(exc.target, False)
                logger.error("HTTP proxy request to %s failed: %s (%s)", exc.target, exc.message, exc.__cause__)
                return exc.to_response()

        return handler

    def select_target(self, request: Any, rules: Sequence[RoutingRule]) -> Selection:
        """Choose a (target, env) pair for the request, or None when none is available."""
        if not rules:
            return None
        with self._lock:
            balancer = self.load_balancer
            grayscale = self.config.routing.grayscale
        if balancer is None:
            return None
        if not grayscale.enabled:
            return self._select_with_balancer(balancer, request, rules)

        env = env_from_headers(request.headers)
        target_rules = _filter_rules_with_fallback(rules, env, grayscale)
        if not target_rules:
            return None
        if grayscale.weighted_random and len(target_rules) > 1:
            chosen = weighted_random_select(target_rules)
            if chosen is None:
                chosen = target_rules[0]
            logger.info("Target %s (env %s) selected via weighted random", chosen.target, chosen.env)
            return chosen.target, chosen.env
        return self._select_with_balancer(balancer, request, target_rules, target_rules[0].env)

    def _select_with_balancer(
        self,
        balancer: LoadBalancer,
        request: Any,
        rules: Sequence[RoutingRule],
        env_override: Optional[str] = None,
    ) -> Selection:
        target = balancer.select_target([rule.target for rule in rules], request)
        if not target:
            return None
        if env_override is not None:
            env = env_override
        else:
            env = next((rule.env for rule in rules if rule.target == target), DEFAULT_ENV)
        logger.info("Target %s (env %s) selected via load balancer", target, env)
        return target, env

    async def _choose(self, request: web.Request, rules: Sequence[RoutingRule]) -> Selection:
        selector = self._target_selector or self.select_target
        result = selector(request, rules)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _proxy_direct(self, request: web.Request, target: str, env: str) -> web.Response:
        try:
            _ = urlsplit(target).port
        except ValueError as exc:
            raise ProxyError("Invalid target URL", target) from exc

        url = direct_target_url(target, request.path, request.query_string)
        headers = _forward_headers(request.headers.items())
        if request.remote:
            prior = request.headers.get("X-Forwarded-For")
            _set_header(headers, "X-Forwarded-For", f"{prior}, {request.remote}" if prior else request.remote)
        if env == CANARY_ENV:
            _set_header(headers, "X-Env", CANARY_ENV)
        body = await request.read()
        logger.info("Routing HTTP %s %s to %s (env %s)", request.method, request.path, target, env)

        session = self._get_direct_session()
        try:
            async with session.request(
                request.method, url, headers=headers, data=body or None, allow_redirects=False
            ) as upstream:
                payload = await upstream.read()
                response = _build_response(upstream.status, upstream.headers.items(), payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise ProxyError("Bad Gateway", target, plain_text=True) from exc
        self.stats.update_request_count(target, True)
        return response

    async def _proxy_with_pool(self, request: web.Request, target: str, env: str) -> web.Response:
        try:
            client = self.http_pool.get_client(target)
        except ValueError as exc:
            raise ProxyError("Failed to get HTTP client", target) from exc

        url = pool_request_url(target, request.path, request.query_string)
        headers = _forward_headers(request.headers.items())
        if env == CANARY_ENV:
            _set_header(headers, "X-Env", CANARY_ENV)
        body = await request.read()

        session = self._get_pool_session(client)
        try:
            async with session.request(
                request.method, url, headers=headers, data=body or None, allow_redirects=False
            ) as upstream:
                payload = await upstream.read()
                response = _build_response(upstream.status, upstream.headers.items(), payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise ProxyError("Backend service unavailable", target) from exc
        self.stats.update_request_count(target, True)
        return response

    def _get_direct_session(self) -> aiohttp.ClientSession:
        if self._direct_session is None or self._direct_session.closed:
            self._direct_session = aiohttp.ClientSession(auto_decompress=False)
        return self._direct_session

    def _get_pool_session(self, client: HostClient) -> aiohttp.ClientSession:
        session = self._pool_sessions.get(client.addr)
        if session is None or session.closed:
            connector = aiohttp.TCPConnector(
                limit=0,
                limit_per_host=max(client.max_conns, 0),
                keepalive_timeout=client.max_idle_conn_duration,
            )
            timeout = aiohttp.ClientTimeout(sock_connect=client.write_timeout, sock_read=client.read_timeout)
            session = aiohttp.ClientSession(connector=connector, timeout=timeout, auto_decompress=False)
            self._pool_sessions[client.addr] = session
        return session

    async def aclose(self) -> None:
        """Close every outgoing client session."""
        sessions = list(self._pool_sessions.values())
        self._pool_sessions.clear()
        if self._direct_session is not None:
            sessions.append(self._direct_session)
            self._direct_session = None
        for session in sessions:
            await session.close()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.aclose()