"""
HTTP surface for the bridge.

Routes:
- GET  /health              adapter health, for load balancers and monitoring
- POST /webhook/{platform}  inbound updates for adapters running in webhook mode
"""

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from aiohttp import web

from chatbridge.config import Platform, ServerConfig

if TYPE_CHECKING:
    from chatbridge.run import BridgeRunner

logger = logging.getLogger(__name__)

TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


class BridgeServer:
    """aiohttp application wired to a BridgeRunner."""

    def __init__(self, runner: "BridgeRunner", config: Optional[ServerConfig] = None):
        self.bridge = runner
        self.config = config or ServerConfig()
        self._app_runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle_health)
        app.router.add_post("/webhook/{platform}", self.handle_webhook)
        return app

    async def start(self) -> None:
        self._app_runner = web.AppRunner(self.build_app())
        await self._app_runner.setup()
        site = web.TCPSite(self._app_runner, self.config.host, self.config.port)
        await site.start()
        logger.info("HTTP server listening on %s:%s", self.config.host, self.config.port)

    async def stop(self) -> None:
        if self._app_runner is not None:
            await self._app_runner.cleanup()
            self._app_runner = None

    async def handle_health(self, request: web.Request) -> web.Response:
        adapters = self.bridge.get_adapter_health_status()
        healthy = bool(adapters) and all(a["healthy"] for a in adapters.values())
        body = {
            "status": "healthy" if healthy else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "adapters": adapters,
        }
        any_healthy = any(a["healthy"] for a in adapters.values())
        return web.json_response(body, status=200 if any_healthy else 503)

    async def handle_webhook(self, request: web.Request) -> web.Response:
        name = request.match_info["platform"]
        try:
            platform = Platform(name)
        except ValueError:
            return web.json_response({"error": f"Unknown platform: {name}"}, status=404)

        adapter = self.bridge.get_adapter(platform)
        if adapter is None:
            return web.json_response({"error": f"{name} is not connected"}, status=404)
        if not adapter.accepts_webhooks:
            return web.json_response(
                {"error": f"Webhooks are not supported for {name}"}, status=501
            )

        if not adapter.check_webhook_secret(request.headers.get(TELEGRAM_SECRET_HEADER)):
            logger.warning("Rejected %s webhook call with a bad secret", name)
            return web.json_response({"error": "Unauthorized"}, status=401)

        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "Expected a JSON object"}, status=400)

        adapter.dispatch_inbound(payload)
        return web.json_response({"ok": True})
