# health_check.py - Health endpoint for hosting platforms
import os
import logging
import sqlite3
from datetime import datetime
from typing import Optional

import psutil
from aiohttp import web

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Serves /health and /metrics from inside the bot's event loop so the
    platform's router sees the process as alive.
    """

    def __init__(self, bot=None, port: int = 8080):
        self.bot = bot
        self.port = port
        self.start_time = datetime.now()
        self.health_checks = 0
        self._runner: Optional[web.AppRunner] = None

    def _bot_state(self) -> dict:
        if self.bot is None:
            return {}
        return {
            "pending_deployments": len(self.bot.rendezvous),
            "conversations": len(self.bot.conversations),
            "trial_timers": len(self.bot.trial_scheduler) if self.bot.trial_scheduler else 0,
        }

    async def health_endpoint(self, request):
        """Health check endpoint for hosting platforms"""
        self.health_checks += 1

        uptime = datetime.now() - self.start_time
        memory_usage = psutil.virtual_memory().percent

        status = {
            "status": "healthy",
            "uptime": str(uptime).split('.')[0],
            "health_checks": self.health_checks,
            "memory_usage": f"{memory_usage:.1f}%",
            "timestamp": datetime.now().isoformat()
        }
        status.update(self._bot_state())

        return web.json_response(status)

    async def metrics_endpoint(self, request):
        """Detailed metrics endpoint"""
        try:
            memory = psutil.virtual_memory()
            disk = psutil.disk_usage('/') if os.path.exists('/') else None
            process = psutil.Process()

            bot_metrics = self._bot_state()
            if self.bot is not None:
                bot_metrics.update(self.bot.db.get_global_statistics())

            metrics = {
                "system": {
                    "cpu_percent": psutil.cpu_percent(interval=None),
                    "memory": {
                        "total": memory.total,
                        "available": memory.available,
                        "percent": memory.percent
                    },
                    "disk": {
                        "total": disk.total,
                        "free": disk.free,
                        "percent": disk.percent
                    } if disk else {},
                    "process_rss": process.memory_info().rss,
                },
                "bot": bot_metrics,
                "timestamp": datetime.now().isoformat()
            }

            return web.json_response(metrics)

        except (psutil.Error, sqlite3.Error, OSError) as e:
            logger.error(f"Collecting metrics failed: {e}")
            return web.json_response({"error": str(e)}, status=500)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/health', self.health_endpoint)
        app.router.add_get('/metrics', self.metrics_endpoint)
        app.router.add_get('/', self.health_endpoint)  # Root endpoint
        return app

    async def start(self):
        """Start the health server on the running event loop"""
        self._runner = web.AppRunner(self.create_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, '0.0.0.0', self.port)
        await site.start()
        logger.info(f"🏥 Health server started on port {self.port}")

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
