"""Admin plane: health check and Prometheus metrics."""

from __future__ import annotations

import structlog
from aiohttp import web

from uptunnel.observability.metrics import generate_metrics, get_content_type
from uptunnel.server.host import split_bind

logger = structlog.get_logger()


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "healthy"})


async def handle_metrics(request: web.Request) -> web.Response:
    """Prometheus metrics endpoint."""
    # charset is part of the exposition content type
    return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})


def create_admin_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/health", handle_health)
    app.router.add_get("/metrics", handle_metrics)
    return app


class AdminServer:
    def __init__(self, bind: str) -> None:
        self.bind = bind
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(create_admin_app())
        await self._runner.setup()
        host, port = split_bind(self.bind)
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info("Admin plane started", host=host, port=port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
