"""HTTP status API for the sandbox daemon.

Read-only endpoints for health checks and debugging from inside or
alongside the sandbox.

Endpoints:
    GET /api/v1/status  Health check + daemon stats (no auth)
    GET /api/v1/agents  Custom sub-agent catalog (bearer token)
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

log = logging.getLogger(__name__)


class StatusApi:
    """Small aiohttp server exposing daemon state."""

    _AUTH_EXEMPT_PATHS = frozenset({"/api/v1/status"})

    def __init__(
        self,
        host: str,
        port: int,
        auth_token: str,
        get_status: Callable[[], dict[str, Any]],
        get_agents: Callable[[], dict[str, Any]],
    ):
        self.host = host
        self.port = port
        self.auth_token = auth_token
        self._get_status = get_status
        self._get_agents = get_agents
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware])
        app.router.add_get("/api/v1/status", self._handle_status)
        app.router.add_get("/api/v1/agents", self._handle_agents)
        return app

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("Status API listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("Status API stopped")

    # ─── Auth Middleware ──────────────────────────────────────────

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.path in self._AUTH_EXEMPT_PATHS:
            return await handler(request)

        # No token configured = deny protected endpoints
        if not self.auth_token:
            return web.json_response({"error": "No auth token configured"}, status=503)

        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], self.auth_token):
            log.warning("Status API: auth failed from %s %s", request.remote, request.path)
            return web.json_response({"error": "unauthorized"}, status=401)
        return await handler(request)

    # ─── Endpoints ────────────────────────────────────────────────

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._get_status())

    async def _handle_agents(self, request: web.Request) -> web.Response:
        return web.json_response({"agents": self._get_agents()})
