import asyncio
import contextlib

import aiohttp
import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from gatewayroute.settings import GatewayConfig, WebSocketSettings
from gatewayroute.websocket_pool import WebSocketPool


async def _plain(request):
    return web.Response(text="not a websocket")


async def _mirror(request):
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    senders = {WSMsgType.TEXT: ws.send_str, WSMsgType.BINARY: ws.send_bytes}
    async for msg in ws:
        send = senders.get(msg.type)
        if send is not None:
            await send(msg.data)
    return ws


@contextlib.asynccontextmanager
async def pooled(max_idle=10, close=True):
    """Yield the base URL of a mirroring server and a pool for it."""
    app = web.Application()
    app.router.add_get("/plain", _plain)
    app.router.add_get("/{tail:.*}", _mirror)
    async with TestServer(app) as server:
        pool = WebSocketPool(GatewayConfig(websocket=WebSocketSettings(max_idle_conns=max_idle)))
        try:
            yield f"ws://{server.host}:{server.port}", pool
        finally:
            if close:
                await pool.close()


@pytest.mark.asyncio
async def test_get_conn_reuses_connection_and_echoes():
    async with pooled() as (base, pool):
        conn1 = await pool.get_conn(base)
        assert await pool.get_conn(base) is conn1
        await conn1.send_str("ping")
        msg = await conn1.receive()
        assert (msg.type, msg.data) == (WSMsgType.TEXT, "ping")


@pytest.mark.asyncio
async def test_close_empties_pool_and_closes_connections():
    async with pooled(close=False) as (base, pool):
        conn = await pool.get_conn(base)
        assert len(pool) == 1
        await pool.close()
        assert len(pool) == 0
        assert conn.closed


@pytest.mark.asyncio
async def test_failed_handshake_raises_and_pools_nothing():
    async with pooled() as (base, pool):
        with pytest.raises(aiohttp.WSServerHandshakeError):
            await pool.get_conn(base + "/plain")
        assert len(pool) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "max_idle, paths, trimmed, kept",
    [(1, ["/a", "/b"], 1, ["/b"]), (5, ["/a"], 0, ["/a"])],
)
async def test_trim_idle(max_idle, paths, trimmed, kept):
    async with pooled(max_idle=max_idle) as (base, pool):
        conns = {path: await pool.get_conn(base + path) for path in paths}
        assert await pool.trim_idle() == trimmed
        assert len(pool) == len(kept)
        assert all(base + path in pool for path in kept)
        assert {path: conn.closed for path, conn in conns.items()} == {path: path not in kept for path in paths}


@pytest.mark.asyncio
async def test_run_cleanup_trims_until_closed():
    async with pooled(max_idle=0, close=False) as (base, pool):
        for path in ("/a", "/b"):
            await pool.get_conn(base + path)
        task = asyncio.create_task(pool.run_cleanup(interval=0.01))
        for _ in range(100):
            if len(pool) == 0:
                break
            await asyncio.sleep(0.01)
        assert len(pool) == 0
        await pool.close()
        await asyncio.wait_for(task, timeout=2)
        assert task.done()


@pytest.mark.asyncio
async def test_release_conn_drops_only_closed_connections():
    async with pooled() as (base, pool):
        conn = await pool.get_conn(base)
        assert pool.release_conn(base) is False
        assert base in pool
        await conn.close()
        assert pool.release_conn(base) is True
        assert len(pool) == 0


@pytest.mark.asyncio
async def test_closed_connection_is_redialled():
    async with pooled() as (base, pool):
        conn1 = await pool.get_conn(base)
        await conn1.close()
        conn2 = await pool.get_conn(base)
        assert conn2 is not conn1
        assert not conn2.closed