# gatewayroute

The routing core of an API gateway, built on `aiohttp`. You describe routes in a
`GatewayConfig`. The package registers them on an `aiohttp.web.Application`, and
each route forwards requests to backend HTTP, WebSocket or gRPC-gateway services.

## Modules

- `gatewayroute.settings` holds the configuration dataclasses:
  - `GatewayConfig`, `RoutingSettings`, `RoutingRule`, `Grayscale`,
    `Performance`, `WebSocketSettings`, `GrpcSettings`, `FileServerSettings`.
  - `RoutingSettings.http_rules()`, `websocket_rules()` and `grpc_rules()`
    group the rules of each protocol by path.
- `gatewayroute.balancing` provides the load balancers and the request counts:
  - `LoadBalancer` is the abstract base, and `RoundRobin` is its only
    implementation.
  - `RequestStats` keeps success and failure counts per target. The
    process-wide instance comes from `get_request_stats()`.
- `gatewayroute.http_pool`:
  - `normalize_target` turns a target URL into its `host[:port]` and raises
    `ValueError` for a malformed URL.
  - `HTTPConnectionPool` keeps one `HostClient` per backend host, with its
    connection limit and timeouts.
- `gatewayroute.http_proxy` holds `HTTPProxy`, which picks a target for each
  request and forwards the request to it.
  - **Forwarding.** The request goes straight to the target. When
    `performance.http_pool_enabled` is set, it goes through a client session for
    each pooled host instead.
  - **Errors.** A route with no target answers `503 {"error": "No available target"}`.
    An unreachable backend answers `502`.
  - **Grayscale releases** apply when `routing.grayscale.enabled` is set.
    - An `X-Env: canary` header limits the choice to rules whose `env` is
      `canary`. If there are none, every rule of the route is used.
    - With `weighted_random` set, targets are picked by weight through
      `weighted_random_select`. Otherwise the load balancer picks them.
  - **Helpers:**
    - `single_joining_slash` joins two path segments.
    - `direct_target_url` and `pool_request_url` build the URLs that requests
      are forwarded to.
    - `env_from_headers` reads the `X-Env` header.
- `gatewayroute.websocket_pool` holds `WebSocketPool`, which reuses one backend
  connection per URL.
  - `trim_idle()` closes connections beyond `websocket.max_idle_conns`. A
    background task runs it once a minute.
- `gatewayroute.websocket_proxy` holds `WebSocketProxy`.
  - It upgrades the client connection and relays text and binary messages in
    both directions to a `ws://` or `wss://` backend.
  - `websocket.prefix` is removed from the path before it is forwarded
    (`backend_url`).
- `gatewayroute.grpc_proxy`:
  - `setup_grpc_proxy` opens a channel to each gRPC rule's target and calls the
    registrar named by the rule's `service_name`. The registrar puts handlers on
    a `ServiceMux`.
  - Responses from those handlers carry the headers `X-Proxy-Type: grpc-gateway`
    and `X-Powered-By: mini-gateway`.
  - When no handler matches, the response is a gRPC-style JSON error.
- `gatewayroute.router` holds the two routers:
  - `PathRouter` registers each HTTP rule's path under `routing.prefix`. Its
    middleware chain is taken from the rule's `middlewares` names. With the
    `regex` engine, regex rules are matched against requests that no other
    route handled.
  - `RegexpRouter` matches every request path against anchored regular
    expressions, and answers `404 {"error": "Route not found"}` when none
    matches.
- `gatewayroute.fileserver` holds `FileServerRouter`, which serves files from
  `file_server.static_file_path` under `/static/`.
- `gatewayroute.routing`:
  - `validate_rules` raises `RoutingConfigError` when a regex path is
    configured with an engine other than `trie-regexp` or `regexp`.
  - `setup_routing` validates the rules and registers the HTTP, gRPC and
    WebSocket routes.

## Installation

```
pip install gatewayroute
```

## Usage

```python
from aiohttp import web

from gatewayroute.http_proxy import HTTPProxy
from gatewayroute.routing import setup_routing
from gatewayroute.settings import GatewayConfig, Grayscale, RoutingRule, RoutingSettings

config = GatewayConfig(
    routing=RoutingSettings(
        engine="gin",
        load_balancer="round_robin",
        grayscale=Grayscale(enabled=True),
        rules={
            "/api/v1/user": [
                RoutingRule(target="http://localhost:8381", env="stable"),
                RoutingRule(target="http://localhost:8383", env="canary"),
            ],
        },
    ),
)

app = web.Application()
setup_routing(app, HTTPProxy(config), config, middlewares={})
web.run_app(app, port=8380)
```

Middlewares take `(request, handler)` and return a response. A middleware that
returns a response without calling `handler` stops the request there.

Static files and gRPC services are set up on their own:

```python
from gatewayroute.fileserver import FileServerRouter
from gatewayroute.grpc_proxy import setup_grpc_proxy

FileServerRouter(config).setup(app)
setup_grpc_proxy(config, app, registry={"HelloService": register_hello})
```

## What it does not do

- There is no command-line program and no configuration file loader. You build
  `GatewayConfig` in code and run the application yourself.
- Only the round-robin load balancer exists. Any other `load_balancer` name
  falls back to it.
- `setup_routing` passes no service registry to `setup_grpc_proxy`. Its gRPC
  routes therefore answer with gRPC-style errors until you call
  `setup_grpc_proxy` with your own registrars.
- The package does not translate HTTP requests into gRPC calls. Your registrars
  supply the handlers that do this.
- Request statistics are kept in memory only. There is no tracing and no
  metrics export.

## Running the tests

```
pip install -e ".[test]"
pytest
```

Some tests start local backend servers on loopback ports.