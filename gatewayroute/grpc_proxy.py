"""HTTP-to-gRPC gateway routes backed by registered service handlers."""

from __future__ import annotations

import inspect
import logging
import re
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any, Optional

import grpc
from aiohttp import web

from gatewayroute.balancing import RequestStats, get_request_stats
from gatewayroute.settings import GatewayConfig

logger = logging.getLogger(__name__)

PathHandler = Callable[[web.Request, dict[str, str]], Any]
ServiceRegistrar = Callable[["ServiceMux", Any], Any]
Connector = Callable[[str], Any]

HTTP_STATUS_FROM_CODE: Mapping[grpc.StatusCode, int] = {
    grpc.StatusCode.OK: 200,
    grpc.StatusCode.CANCELLED: 499,
    grpc.StatusCode.UNKNOWN: 500,
    grpc.StatusCode.INVALID_ARGUMENT: 400,
    grpc.StatusCode.DEADLINE_EXCEEDED: 504,
    grpc.StatusCode.NOT_FOUND: 404,
    grpc.StatusCode.ALREADY_EXISTS: 409,
    grpc.StatusCode.PERMISSION_DENIED: 403,
    grpc.StatusCode.UNAUTHENTICATED: 401,
    grpc.StatusCode.RESOURCE_EXHAUSTED: 429,
    grpc.StatusCode.FAILED_PRECONDITION: 400,
    grpc.StatusCode.ABORTED: 409,
    grpc.StatusCode.OUT_OF_RANGE: 400,
    grpc.StatusCode.UNIMPLEMENTED: 501,
    grpc.StatusCode.INTERNAL: 500,
    grpc.StatusCode.UNAVAILABLE: 503,
    grpc.StatusCode.DATA_LOSS: 500,
}

_PARAM = re.compile(r"\{(\w+)\}")


def add_gateway_headers(headers: MutableMapping[str, str]) -> None:
    """Mark a response as produced by the gateway's gRPC proxy."""
    headers["X-Proxy-Type"] = "grpc-gateway"
    headers["X-Powered-By"] = "mini-gateway"


def _compile_template(path: str) -> re.Pattern[str]:
    pieces = _PARAM.split(path)
    regex = "".join(
        re.escape(piece) if index % 2 == 0 else f"(?P<{piece}>[^/]+)" for index, piece in enumerate(pieces)
    )
    return re.compile(regex)


def _status_of(exc: grpc.RpcError) -> tuple[grpc.StatusCode, str]:
    code_fn = getattr(exc, "code", None)
    code = code_fn() if callable(code_fn) else None
    if not isinstance(code, grpc.StatusCode):
        code = grpc.StatusCode.UNKNOWN
    details_fn = getattr(exc, "details", None)
    details = details_fn() if callable(details_fn) else None
    return code, details if details is not None else str(exc)


@dataclass(frozen=True)
class _PathRoute:
    method: str
    template: str
    pattern: re.Pattern[str]
    handler: PathHandler


class ServiceMux:
    """Maps HTTP method and path templates to gRPC-backed handlers."""

    def __init__(self) -> None:
        self._routes: list[_PathRoute] = []
        self.error_counts: Counter[tuple[str, str]] = Counter()

    def handle_path(self, method: str, path: str, handler: PathHandler) -> None:
        """Register a handler for a method and a path such as ``/v1/users/{id}``.

        Raises ValueError for a path that does not start with a slash.
        """
        if not path.startswith("/"):
            raise ValueError(f"invalid path template {path!r}")
        self._routes.append(_PathRoute(method.upper(), path, _compile_template(path), handler))

    async def dispatch(self, request: web.Request) -> web.StreamResponse:
        """Run the handler matching the request, or answer with a gRPC-style error."""
        path = request.path
        method_mismatch = False
        for route in self._routes:
            match = route.pattern.fullmatch(path)
            if match is None:
                continue
            if route.method != request.method:
                method_mismatch = True
                continue
            try:
                result = route.handler(request, match.groupdict())
                if inspect.isawaitable(result):
                    result = await result
            except grpc.RpcError as exc:
                code, message = _status_of(exc)
                return self._error_response(path, code, message)
            metadata = request.get("grpc_metadata")
            if metadata:
                logger.info("Metadata found in request context: %s", metadata)
            else:
                logger.warning("No metadata found in request context")
            if not result.prepared:
                add_gateway_headers(result.headers)
            return result
        if method_mismatch:
            return self._error_response(path, grpc.StatusCode.UNIMPLEMENTED, "Method Not Allowed")
        return self._error_response(path, grpc.StatusCode.NOT_FOUND, "Not Found")

    def _error_response(self, path: str, code: grpc.StatusCode, message: str) -> web.Response:
        number = code.value[0]
        self.error_counts[(path, str(number))] += 1
        logger.error("gRPC request processing failed for %s: status %d, %s", path, number, message)
        return web.json_response(
            {"code": number, "message": message, "details": []},
            status=HTTP_STATUS_FROM_CODE.get(code, 500),
        )


def _insecure_channel(target: str) -> grpc.Channel:
    return grpc.insecure_channel(target)


def _close_channel(channel: Any, pending: list[Awaitable[Any]]) -> None:
    if channel is None:
        return
    result = channel.close()
    if inspect.isawaitable(result):
        pending.append(result)


def _route_handler(
    mux: ServiceMux, target: str, stats: RequestStats
) -> Callable[[web.Request], Awaitable[web.StreamResponse]]:
    async def handler(request: web.Request) -> web.StreamResponse:
        path = request.path
        if len(path) > 1 and path.endswith("/"):
            path = path[:-1]
            query = request.query_string
            forwarded = request.clone(rel_url=path + ("?" + query if query else ""))
        else:
            forwarded = request
        forwarded["grpc_metadata"] = (("request-id", request.headers.get("X-Request-ID", "")),)

        start = time.perf_counter()
        response = await mux.dispatch(forwarded)
        stats.update_request_count(target, response.status < 400)
        logger.debug(
            "gRPC proxy %s %s took %.6fs", request.method, forwarded.path, time.perf_counter() - start
        )
        return response

    return handler


def setup_grpc_proxy(
    config: GatewayConfig,
    app: web.Application,
    registry: Optional[Mapping[str, ServiceRegistrar]] = None,
    connect: Optional[Connector] = None,
) -> ServiceMux:
    """Connect to every gRPC rule's target, register its service and add the routes.

    ``registry`` maps a rule's service name to a function that registers the
    service's handlers on the mux; ``connect`` opens a channel to a target.
    """
    registry = {} if registry is None else registry
    connect = connect or _insecure_channel
    mux = ServiceMux()
    stats = get_request_stats()
    channels: list[Any] = []
    pending: list[Awaitable[Any]] = []

    for route, rules in config.routing.grpc_rules().items():
        target = ""
        for rule in rules:
            try:
                channel = connect(rule.target)
            except Exception as exc:
                logger.error("Failed to establish gRPC connection to %s: %s", rule.target, exc)
                continue
            registrar = registry.get(rule.service_name)
            if registrar is None:
                logger.error("Failed to register service %s for %s", rule.service_name, rule.target)
                _close_channel(channel, pending)
                continue
            try:
                registrar(mux, channel)
            except Exception as exc:
                logger.error("Failed to register gRPC service handler for %s: %s", rule.target, exc)
                _close_channel(channel, pending)
                continue
            channels.append(channel)
            target = rule.target
            logger.info("Registered gRPC service handler for %s -> %s", route, rule.target)

        app.router.add_route("*", route, _route_handler(mux, target, stats))
        logger.info("gRPC proxy route %s configured", route)

    async def _cleanup(app: web.Application) -> None:
        for channel in channels:
            _close_channel(channel, pending)
        channels.clear()
        while pending:
            await pending.pop()

    app.on_cleanup.append(_cleanup)
    return mux