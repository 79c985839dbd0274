"""Serving of static files under the /static/ path."""

from __future__ import annotations

import logging
from pathlib import Path

from aiohttp import web

from gatewayroute.settings import GatewayConfig

logger = logging.getLogger(__name__)

STATIC_ROUTE = "/static/{filepath:.*}"


class FileServerRouter:
    """Serves files from a configured root directory."""

    def __init__(self, config: GatewayConfig) -> None:
        self.file_path = config.file_server.static_file_path
        self.enabled = config.file_server.enabled_fast_http

    def setup(self, app: web.Application) -> None:
        """Register the static file route, unless no root directory is configured."""
        if not self.file_path:
            logger.warning("Static file serving disabled due to empty file path")
            return
        app.router.add_get(STATIC_ROUTE, self.serve)
        mode = "Zero-copy" if self.enabled else "Default"
        logger.info("%s static file serving enabled from %s", mode, self.file_path)

    async def serve(self, request: web.Request) -> web.StreamResponse:
        """Answer with the requested file, or with an error status."""
        relative = request.match_info.get("filepath", "")
        if not relative:
            logger.warning("Invalid static file request: empty file path")
            return web.json_response({"error": "File path cannot be empty"}, status=400)
        if ".." in relative.replace("\\", "/").split("/"):
            logger.warning("Rejected static file request with parent reference: %s", relative)
            return web.Response(status=400, text="invalid URL path")

        full_path = Path(self.file_path.rstrip("/") + "/" + relative.lstrip("/"))
        logger.debug("Handling static file request %s -> %s", request.path, full_path)
        if full_path.is_dir():
            full_path = full_path / "index.html"
        if not full_path.is_file():
            logger.warning("Failed to serve static file %s: not found", full_path)
            return web.Response(status=404, text="404 page not found")
        logger.info("Serving static file %s", full_path)
        return web.FileResponse(full_path)