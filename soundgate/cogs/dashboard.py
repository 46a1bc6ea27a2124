"""
Web Dashboard Cog - Live playback state and remote control
No authentication: bind it to localhost or a trusted network
"""
import asyncio
import json
import logging
from datetime import datetime, UTC
from pathlib import Path

import psutil
from aiohttp import WSMsgType, web
from discord.ext import commands

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "web" / "templates"


class WebSocketManager:
    """Manages WebSocket connections for state pushes."""

    def __init__(self):
        self.clients: set[web.WebSocketResponse] = set()

    async def broadcast(self, message: dict):
        """Send message to all active clients."""
        disconnected = set()
        for ws in list(self.clients):
            if ws.closed:
                disconnected.add(ws)
                continue
            try:
                await ws.send_json(message)
            except (ConnectionResetError, RuntimeError) as e:
                logger.debug(f"Dropping dashboard client: {e}")
                disconnected.add(ws)
        self.clients -= disconnected

    async def close_all(self):
        """Close all active websocket connections."""
        for ws in list(self.clients):
            try:
                await ws.close(code=1001, message=b"Server shutting down")
            except Exception as e:
                logger.debug(f"Failed to close dashboard client: {e}")
        self.clients.clear()


class DashboardCog(commands.Cog):
    """Pushes playback snapshots to viewers and accepts control requests."""

    def __init__(self, bot: commands.Bot, host: str = "127.0.0.1", port: int = 3000, broadcast_interval: float = 3):
        self.bot = bot
        self.host = host
        self.port = port
        self.broadcast_interval = broadcast_interval
        self.app: web.Application | None = None
        self.runner: web.AppRunner | None = None
        self.ws_manager = WebSocketManager()
        self._broadcast_task: asyncio.Task | None = None

    def build_app(self) -> web.Application:
        self.app = web.Application()
        self._setup_routes()
        return self.app

    async def cog_load(self):
        self.build_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        logger.info(f"Dashboard at http://{self.host}:{self.port}")

    async def cog_unload(self):
        if self._broadcast_task:
            self._broadcast_task.cancel()

        # Close websockets first
        await self.ws_manager.close_all()

        if self.runner:
            await self.runner.cleanup()

    def _setup_routes(self):
        self.app.router.add_get("/", self._handle_index)
        self.app.router.add_get("/ws", self._handle_websocket)
        self.app.router.add_get("/api/status", self._handle_status)
        self.app.router.add_post("/control", self._handle_control)
        self.app.router.add_post("/volume", self._handle_volume)
        self.app.router.add_post("/loop", self._handle_loop)
        self.app.router.add_post("/update-cookies", self._handle_update_cookies)

    # ==================== STATE PUSH ====================

    def state_payload(self) -> dict:
        return self.bot.playback_state.snapshot().to_dict()

    async def broadcast_state(self):
        if not self.ws_manager.clients:
            return
        await self.ws_manager.broadcast(self.state_payload())

    async def _broadcast_loop(self):
        while True:
            await asyncio.sleep(self.broadcast_interval)
            try:
                await self.broadcast_state()
            except Exception as e:
                logger.error(f"Dashboard broadcast failed: {e}")

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        self.ws_manager.clients.add(ws)
        logger.info("Dashboard client connected")

        try:
            await ws.send_json(self.state_payload())
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.debug(f"Ignoring malformed dashboard message: {msg.data!r}")
                        continue
                    if isinstance(data, dict) and data.get("type") == "getStatus":
                        await ws.send_json(self.state_payload())
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"Dashboard websocket error: {ws.exception()}")
        finally:
            self.ws_manager.clients.discard(ws)
            logger.info("Dashboard client disconnected")
        return ws

    # ==================== PAGES ====================

    async def _handle_index(self, request: web.Request) -> web.Response:
        html_file = TEMPLATE_DIR / "index.html"
        if html_file.exists():
            return web.Response(text=html_file.read_text(encoding="utf-8"), content_type="text/html")
        return web.Response(text="Dashboard template not found", status=404)

    async def _get_status_data(self) -> dict:
        process = psutil.Process()
        return {
            "status": "online",
            "guilds": len(self.bot.guilds),
            "voice_connections": len(self.bot.voice_clients),
            "latency_ms": round(self.bot.latency * 1000, 2),
            "cpu_percent": psutil.cpu_percent(),
            "ram_percent": psutil.virtual_memory().percent,
            "process_ram_mb": round(process.memory_info().rss / 1024 / 1024, 2),
            "uptime_seconds": int((datetime.now(UTC) - self.bot.start_time).total_seconds()),
            "playback": self.state_payload(),
        }

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(await self._get_status_data())

    # ==================== CONTROL ====================

    @staticmethod
    async def _read_body(request: web.Request) -> dict | None:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def _invalid_body() -> web.Response:
        return web.json_response({"success": False, "message": "Invalid request body"}, status=400)

    async def _handle_control(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if body is None:
            return self._invalid_body()
        result = await self.bot.controller.control(body.get("action"), body.get("guildId"))
        return web.json_response(result.to_dict())

    async def _handle_volume(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if body is None:
            return self._invalid_body()
        result = await self.bot.controller.volume(body.get("volume"), body.get("guildId"))
        return web.json_response(result.to_dict())

    async def _handle_loop(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if body is None:
            return self._invalid_body()
        result = await self.bot.controller.loop(body.get("mode"), body.get("guildId"))
        return web.json_response(result.to_dict())

    async def _handle_update_cookies(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if body is None:
            return self._invalid_body()

        cookies = body.get("cookies")
        if not cookies or not isinstance(cookies, str):
            return web.json_response({"success": False, "message": "No cookies provided"})

        try:
            if not self.bot.cookies.replace(cookies):
                return web.json_response({"success": False, "message": "Failed to update YouTube cookies"})
            await self.bot.reload_credentials()
        except OSError as e:
            logger.error(f"Failed to write cookie file: {e}")
            return web.json_response({"success": False, "message": "Failed to update YouTube cookies"})
        return web.json_response({"success": True, "message": "YouTube cookies updated"})


async def setup(bot: commands.Bot):
    from soundgate.config import config
    await bot.add_cog(DashboardCog(bot, config.WEB_HOST, config.WEB_PORT, config.BROADCAST_INTERVAL))
