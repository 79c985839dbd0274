import contextlib
import json

import pytest
from aiohttp import test_utils, web

from gatewayroute.fileserver import FileServerRouter
from gatewayroute.settings import FileServerSettings, GatewayConfig


def make_config(root, fast=False):
    return GatewayConfig(file_server=FileServerSettings(static_file_path=str(root), enabled_fast_http=fast))


@contextlib.asynccontextmanager
async def serve(app):
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


@pytest.mark.asyncio
@pytest.mark.parametrize("fast", [True, False])
async def test_serves_file_contents(tmp_path, fast):
    (tmp_path / "hello.txt").write_text("hello static")
    app = web.Application()
    FileServerRouter(make_config(tmp_path, fast)).setup(app)
    async with serve(app) as client:
        resp = await client.get("/static/hello.txt")
        assert resp.status == 200
        assert await resp.text() == "hello static"


@pytest.mark.asyncio
async def test_serves_nested_file(tmp_path):
    (tmp_path / "css").mkdir()
    (tmp_path / "css" / "site.css").write_text("body {}")
    app = web.Application()
    FileServerRouter(make_config(tmp_path)).setup(app)
    async with serve(app) as client:
        resp = await client.get("/static/css/site.css")
        assert await resp.text() == "body {}"


@pytest.mark.asyncio
async def test_directory_serves_index(tmp_path):
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "index.html").write_text("<p>index</p>")
    app = web.Application()
    FileServerRouter(make_config(tmp_path)).setup(app)
    async with serve(app) as client:
        resp = await client.get("/static/docs")
        assert await resp.text() == "<p>index</p>"


@pytest.mark.asyncio
async def test_missing_file_is_not_found(tmp_path):
    app = web.Application()
    FileServerRouter(make_config(tmp_path)).setup(app)
    async with serve(app) as client:
        resp = await client.get("/static/absent.txt")
        assert resp.status == 404


def test_empty_root_registers_no_route():
    app = web.Application()
    FileServerRouter(make_config("")).setup(app)
    assert list(app.router.resources()) == []


def test_settings_are_taken_from_config(tmp_path):
    router = FileServerRouter(make_config(tmp_path, fast=True))
    assert router.file_path == str(tmp_path)
    assert router.enabled is True


@pytest.mark.asyncio
async def test_empty_file_path_is_bad_request(tmp_path):
    router = FileServerRouter(make_config(tmp_path))
    request = test_utils.make_mocked_request("GET", "/static/", match_info={"filepath": ""})
    resp = await router.serve(request)
    assert resp.status == 400
    assert json.loads(resp.body) == {"error": "File path cannot be empty"}


@pytest.mark.asyncio
async def test_parent_reference_is_rejected(tmp_path):
    (tmp_path / "inner").mkdir()
    (tmp_path / "outside.txt").write_text("hidden")
    router = FileServerRouter(make_config(tmp_path / "inner"))
    request = test_utils.make_mocked_request("GET", "/static/../outside.txt", match_info={"filepath": "../outside.txt"})
    resp = await router.serve(request)
    assert resp.status == 400