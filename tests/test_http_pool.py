import pytest

from gatewayroute.http_pool import (
    DEFAULT_MAX_IDLE_CONN_DURATION,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_WRITE_TIMEOUT,
    HostClient,
    HTTPConnectionPool,
    normalize_target,
)
from gatewayroute.settings import GatewayConfig, Performance, RoutingRule, RoutingSettings


@pytest.mark.parametrize("enabled", [True, False])
def test_new_http_connection_pool(enabled):
    cfg = GatewayConfig(performance=Performance(http_pool_enabled=enabled))
    pool = HTTPConnectionPool(cfg)
    assert pool.config is cfg
    assert pool.closed is False


def test_enabled_pool_initializes_http_targets():
    cfg = GatewayConfig(
        performance=Performance(http_pool_enabled=True, max_conns_per_host=100),
        routing=RoutingSettings(
            rules={
                "/api/v1/user": [
                    RoutingRule(target="http://localhost:8381"),
                    RoutingRule(target="http://localhost:8381"),
                    RoutingRule(target="://invalid"),
                ],
                "/ws/echo": [RoutingRule(target="ws://localhost:8392", protocol="websocket")],
            }
        ),
    )
    pool = HTTPConnectionPool(cfg)
    assert len(pool) == 1
    assert "localhost:8381" in pool
    assert "localhost:8392" not in pool


def test_disabled_pool_starts_empty():
    cfg = GatewayConfig(
        routing=RoutingSettings(rules={"/a": [RoutingRule(target="http://localhost:8381")]})
    )
    assert len(HTTPConnectionPool(cfg)) == 0


@pytest.fixture
def pool():
    return HTTPConnectionPool(
        GatewayConfig(performance=Performance(http_pool_enabled=True, max_conns_per_host=100))
    )


@pytest.mark.parametrize(
    "target, addr",
    [("http://example.com:8080", "example.com:8080"), ("localhost:8080", "localhost:8080")],
)
def test_get_client(pool, target, addr):
    client = pool.get_client(target)
    assert client == HostClient(
        addr=addr,
        max_conns=100,
        max_idle_conn_duration=DEFAULT_MAX_IDLE_CONN_DURATION,
        read_timeout=DEFAULT_READ_TIMEOUT,
        write_timeout=DEFAULT_WRITE_TIMEOUT,
    )


def test_get_client_invalid_url(pool):
    with pytest.raises(ValueError):
        pool.get_client("://invalid")


def test_get_client_reuses_client(pool):
    first = pool.get_client("http://example.com:8080")
    second = pool.get_client("http://example.com:8080/other")
    assert first is second


@pytest.mark.parametrize(
    "target, expected",
    [
        ("http://example.com:8080", "example.com:8080"),
        ("https://example.com", "example.com"),
        ("localhost:8080", "localhost:8080"),
    ],
)
def test_normalize_target(target, expected):
    assert normalize_target(target) == expected


def test_normalize_target_invalid():
    with pytest.raises(ValueError):
        normalize_target("://invalid")


def test_close():
    pool = HTTPConnectionPool(GatewayConfig(performance=Performance(http_pool_enabled=True)))
    pool.get_client("http://test.com")
    assert len(pool) == 1
    pool.close()
    assert pool.closed is True
    assert len(pool) == 0


def test_context_manager_closes():
    with HTTPConnectionPool(GatewayConfig()) as pool:
        pool.get_client("http://test.com")
    assert pool.closed is True
    assert "test.com" not in pool