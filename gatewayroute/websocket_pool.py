"""Pool of outgoing WebSocket connections keyed by backend URL."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from gatewayroute.settings import GatewayConfig

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL = 60.0


class WebSocketPool:
    """Reuses one backend WebSocket connection per target URL.

    A background task, started with the first connection, closes connections
    beyond ``max_idle`` once per cleanup interval.
    """

    def __init__(self, config: GatewayConfig, *, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.max_idle = config.websocket.max_idle_conns
        self.idle_timeout = config.websocket.idle_timeout
        self._conns: dict[str, aiohttp.ClientWebSocketResponse] = {}
        self._lock = asyncio.Lock()
        self._session = session
        self._owns_session = session is None
        self._stopped = asyncio.Event()
        self._cleanup_task: Optional[asyncio.Task[None]] = None
        logger.info(
            "WebSocket connection pool initialized (max idle %d, idle timeout %.1fs)",
            self.max_idle,
            self.idle_timeout,
        )

    def __len__(self) -> int:
        return len(self._conns)

    def __contains__(self, target: object) -> bool:
        return target in self._conns

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _ensure_cleanup(self) -> None:
        if self._cleanup_task is None and not self._stopped.is_set():
            self._cleanup_task = asyncio.get_running_loop().create_task(self.run_cleanup())

    async def get_conn(self, target: str) -> aiohttp.ClientWebSocketResponse:
        """Return the open connection to ``target``, dialling a new one if needed.

        Raises the aiohttp error of a failed handshake or connection attempt.
        """
        conn = self._conns.get(target)
        if conn is not None and not conn.closed:
            return conn

        async with self._lock:
            conn = self._conns.get(target)
            if conn is not None and not conn.closed:
                return conn
            self._ensure_cleanup()
            try:
                conn = await self._get_session().ws_connect(target)
            except aiohttp.WSServerHandshakeError as exc:
                logger.error("Failed to establish WebSocket connection to %s: %s", target, exc)
                logger.debug("WebSocket handshake response status %d", exc.status)
                raise
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                logger.error("Failed to establish WebSocket connection to %s: %s", target, exc)
                raise
            self._conns[target] = conn
            logger.info("Successfully established WebSocket connection to %s", target)
            return conn

    def release_conn(self, target: str) -> bool:
        """Forget the connection to ``target`` if it has already closed.

        Open connections stay pooled for reuse; returns whether one was dropped.
        """
        conn = self._conns.get(target)
        if conn is not None and conn.closed:
            del self._conns[target]
            return True
        return False

    async def trim_idle(self) -> int:
        """Close the oldest connections until at most ``max_idle`` remain; return how many closed."""
        closed = 0
        async with self._lock:
            if len(self._conns) <= self.max_idle:
                return 0
            for target in list(self._conns):
                if len(self._conns) <= self.max_idle:
                    break
                conn = self._conns.pop(target)
                try:
                    await conn.close()
                except Exception as exc:
                    logger.warning("Failed to close idle WebSocket connection to %s: %s", target, exc)
                closed += 1
                logger.info("Closed idle WebSocket connection to %s", target)
        return closed

    async def run_cleanup(self, interval: float = DEFAULT_CLEANUP_INTERVAL) -> None:
        """Trim idle connections every ``interval`` seconds until the pool is closed."""
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.trim_idle()
        logger.info("WebSocket pool cleanup routine stopped")

    async def close(self) -> None:
        """Stop the cleanup task and close every pooled connection."""
        self._stopped.set()
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

        async with self._lock:
            closed = len(self._conns)
            for target, conn in list(self._conns.items()):
                try:
                    await conn.close()
                except Exception as exc:
                    logger.warning("Failed to close WebSocket connection to %s: %s", target, exc)
            self._conns.clear()
            if self._owns_session and self._session is not None:
                await self._session.close()
                self._session = None
        logger.info("WebSocket connection pool closed (%d connections)", closed)