"""Configuration structures for routing, proxying and static file serving."""

from __future__ import annotations

from dataclasses import dataclass, field

HTTP_PROTOCOLS = frozenset({"", "http"})
WEBSOCKET_PROTOCOLS = frozenset({"websocket"})
GRPC_PROTOCOLS = frozenset({"grpc"})


@dataclass
class RoutingRule:
    """One backend target that a route may forward to."""

    target: str = ""
    weight: int = 1
    env: str = "stable"
    protocol: str = "http"
    service_name: str = ""
    is_regex: bool = False
    middlewares: list[str] = field(default_factory=list)


@dataclass
class Grayscale:
    """Canary release settings."""

    enabled: bool = False
    weighted_random: bool = False
    default_env: str = "stable"
    canary_env: str = "canary"


@dataclass
class Performance:
    """Connection pooling settings."""

    http_pool_enabled: bool = False
    max_conns_per_host: int = 0


@dataclass
class WebSocketSettings:
    """WebSocket proxy settings; the idle timeout is in seconds."""

    enabled: bool = False
    prefix: str = "/ws"
    max_idle_conns: int = 10
    idle_timeout: float = 300.0


@dataclass
class GrpcSettings:
    """gRPC proxy settings."""

    enabled: bool = False


@dataclass
class FileServerSettings:
    """Static file serving settings."""

    static_file_path: str = ""
    enabled_fast_http: bool = False


@dataclass
class RoutingSettings:
    """Routing engine choice and the route table, keyed by path."""

    engine: str = "trie-regexp"
    prefix: str = ""
    load_balancer: str = "round_robin"
    grayscale: Grayscale = field(default_factory=Grayscale)
    rules: dict[str, list[RoutingRule]] = field(default_factory=dict)

    def _rules_for(self, protocols: frozenset[str]) -> dict[str, list[RoutingRule]]:
        selected: dict[str, list[RoutingRule]] = {}
        for path, rules in self.rules.items():
            matching = [rule for rule in rules if rule.protocol in protocols]
            if matching:
                selected[path] = matching
        return selected

    def http_rules(self) -> dict[str, list[RoutingRule]]:
        """Rules that forward plain HTTP traffic, grouped by path."""
        return self._rules_for(HTTP_PROTOCOLS)

    def websocket_rules(self) -> dict[str, list[RoutingRule]]:
        """Rules that forward WebSocket traffic, grouped by path."""
        return self._rules_for(WEBSOCKET_PROTOCOLS)

    def grpc_rules(self) -> dict[str, list[RoutingRule]]:
        """Rules that forward to gRPC services, grouped by path."""
        return self._rules_for(GRPC_PROTOCOLS)


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    routing: RoutingSettings = field(default_factory=RoutingSettings)
    performance: Performance = field(default_factory=Performance)
    websocket: WebSocketSettings = field(default_factory=WebSocketSettings)
    grpc: GrpcSettings = field(default_factory=GrpcSettings)
    file_server: FileServerSettings = field(default_factory=FileServerSettings)