"""Per-host client settings pooled by backend address."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from urllib.parse import urlsplit

from gatewayroute.settings import GatewayConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_IDLE_CONN_DURATION = 30.0
DEFAULT_READ_TIMEOUT = 5.0
DEFAULT_WRITE_TIMEOUT = 5.0


@dataclass(frozen=True)
class HostClient:
    """Connection settings for one backend host; durations are in seconds."""

    addr: str
    max_conns: int = 0
    max_idle_conn_duration: float = DEFAULT_MAX_IDLE_CONN_DURATION
    read_timeout: float = DEFAULT_READ_TIMEOUT
    write_timeout: float = DEFAULT_WRITE_TIMEOUT


def normalize_target(target: str) -> str:
    """Return the host[:port] of a target URL, or the target itself when it has no host.

    Raises ValueError for a target that is not a valid URL.
    """
    if target.startswith(":"):
        raise ValueError(f"missing protocol scheme in {target!r}")
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in target):
        raise ValueError(f"invalid control character in {target!r}")
    try:
        parts = urlsplit(target)
        parts.port
    except ValueError as exc:
        raise ValueError(f"invalid target {target!r}: {exc}") from exc
    host = parts.netloc.rpartition("@")[2]
    return host or target


class HTTPConnectionPool:
    """Keeps one HostClient per backend host."""

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config
        self.closed = False
        self._clients: dict[str, HostClient] = {}
        self._lock = threading.Lock()
        if config.performance.http_pool_enabled:
            self._initialize()
        else:
            logger.info("HTTP connection pool disabled in configuration")

    def _initialize(self) -> None:
        initialized = 0
        for rules in self.config.routing.http_rules().values():
            for rule in rules:
                try:
                    host = normalize_target(rule.target)
                except ValueError as exc:
                    logger.error("Invalid target address %r: %s", rule.target, exc)
                    continue
                with self._lock:
                    if host not in self._clients:
                        self._clients[host] = self._new_host_client(host)
                        initialized += 1
                        logger.info("Initialized HostClient for %s", host)
        logger.info("HTTP connection pool initialized with %d targets", initialized)

    def _new_host_client(self, addr: str) -> HostClient:
        return HostClient(addr=addr, max_conns=self.config.performance.max_conns_per_host)

    def get_client(self, target: str) -> HostClient:
        """Return the client for the target's host, creating it if needed."""
        try:
            host = normalize_target(target)
        except ValueError:
            logger.error("Failed to normalize target address %r", target)
            raise
        with self._lock:
            client = self._clients.get(host)
            if client is None:
                client = self._clients[host] = self._new_host_client(host)
                logger.info("Dynamically created new HostClient for %s", host)
        return client

    def close(self) -> None:
        """Mark the pool closed and drop every client."""
        with self._lock:
            self.closed = True
            self._clients.clear()
        logger.info("HTTP connection pool closed")

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, host: object) -> bool:
        with self._lock:
            return host in self._clients

    def __enter__(self) -> HTTPConnectionPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()