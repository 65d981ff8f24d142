# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import contextlib
import logging
import time
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse

from common.config import CURRENT_VERSION

logger = logging.getLogger("bot.health")


class _EmbeddedServer(uvicorn.Server):
    # the bot's event loop owns SIGINT/SIGTERM
    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HealthServer:
    """Small HTTP endpoint for container health checks."""

    def __init__(self, stats: Callable[[], dict], *, ready: Callable[[], bool] = lambda: True):
        self._stats = stats
        self._ready = ready
        self._started_at = time.time()
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None
        self.app = self.build_app()

    def build_app(self) -> FastAPI:
        app = FastAPI(title="Zonesync", docs_url=None, redoc_url=None, openapi_url=None)
        app.add_api_route("/health", self.health, methods=["GET"])
        app.add_api_route("/", self.root, methods=["GET"], response_class=PlainTextResponse)
        return app

    async def health(self) -> JSONResponse:
        ready = bool(self._ready())
        body = {
            "status": "ok" if ready else "starting",
            "version": CURRENT_VERSION,
            "uptime_seconds": int(time.time() - self._started_at),
        }
        try:
            body.update(self._stats())
        except Exception:
            logger.exception("[⚠️] Collecting health stats failed")
            body["status"] = "degraded"
        return JSONResponse(body, status_code=200 if ready else 503)

    async def root(self) -> PlainTextResponse:
        return PlainTextResponse("Zonesync bot is running")

    async def start(self, host: str, port: int) -> None:
        config = uvicorn.Config(
            self.app, host=host, port=port, log_level="warning", access_log=False, lifespan="off"
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._serve(port), name="health_http")
        logger.info("[✅] Health endpoint listening on http://%s:%s/health", host, port)

    async def _serve(self, port: int) -> None:
        try:
            await self._server.serve()
        except SystemExit:
            # uvicorn exits the process when it cannot bind
            logger.error("[⛔] Health endpoint failed to bind port %s", port)

    async def close(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(self._task, timeout=5)
        self._server = None
        self._task = None
