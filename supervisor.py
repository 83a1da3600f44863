#!/usr/bin/env python3
"""
Launcher that runs on every deployed dyno.

Starts the Levanter WhatsApp bot with node, watches its output and the
app's Heroku logs, and reports to Telegram: "connected" and "logged out"
notices go to the broadcast channel, where the deploy bot picks them up.
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, List

from telegram import Bot

from heroku_client import HerokuClient, PlatformError
from notification_relay import Notifier
from resource_monitor import ResourceMonitor
from reminder_scheduler import parse_alert_time
from status_lines import format_connected_notice, format_logout_notice

logger = logging.getLogger(__name__)

# West Africa Time, no daylight saving
ALERT_TIMEZONE = timezone(timedelta(hours=1), "WAT")
LOGOUT_ALERT_COOLDOWN = timedelta(hours=24)

CONNECTED_MARKER = "External Plugins Installed"
INVALID_SESSION_MARKER = "INVALID SESSION ID"
R14_MARKER = "Error R14 (Memory quota exceeded)"
QUOTA_MARKER = "exceeded the data transfer quota"
CRASH_MARKERS = ("Process exited with status 137", "State changed from starting to crashed")


def load_settings(environ: Optional[Dict[str, str]] = None) -> Dict:
    """Supervisor settings from the dyno's config vars"""
    environ = os.environ if environ is None else environ
    try:
        restart_delay = int(environ.get("RESTART_DELAY_MINUTES") or 360)
    except ValueError:
        logger.warning(f"Invalid RESTART_DELAY_MINUTES {environ.get('RESTART_DELAY_MINUTES')!r}, using 360")
        restart_delay = 360
    return {
        "app_name": environ.get("APP_NAME") or "Levanter App",
        "session_id": environ.get("SESSION_ID") or "unknown-session",
        "status_view_emoji": environ.get("STATUS_VIEW_EMOJI") or "",
        "restart_delay_minutes": restart_delay,
        "heroku_api_key": environ.get("HEROKU_API_KEY") or "",
        "bot_token": environ.get("TELEGRAM_BOT_TOKEN") or "",
        "user_id": environ.get("TELEGRAM_USER_ID") or "",
        "channel_id": environ.get("TELEGRAM_CHANNEL_ID") or "",
        "owner_label": environ.get("OWNER_LABEL") or "there",
        "levanter_dir": environ.get("LEVANTER_DIR") or "levanter",
        "log_poll_interval": 180,
        "startup_delay": 3,
        "restart_backoff": 5,
        "max_restarts": 5,
        "restart_window": 30,
    }


class LevanterSupervisor:
    def __init__(self, settings: Dict, notifier: Optional[Notifier] = None,
                 heroku: Optional[HerokuClient] = None):
        self.settings = settings
        self.app_name = settings["app_name"]
        self.notifier = notifier
        self.heroku = heroku
        self.user_id = settings.get("user_id") or None
        self.channel_id = settings.get("channel_id") or None

        self.last_logout_alert: Optional[datetime] = None
        self.last_logout_message_id: Optional[int] = None
        self.restart_scheduled = False
        self.restart_count = 0
        self.last_restart_time = 0.0
        self.exit_code: Optional[int] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self._stopped = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    # Telegram

    async def alert(self, text: str, chat_id=None) -> Optional[int]:
        if self.notifier is None:
            logger.error("TELEGRAM_BOT_TOKEN is not set, cannot send alerts")
            return None
        chat_id = chat_id or self.channel_id
        if not chat_id:
            return None
        return await self.notifier.send(chat_id, text)

    async def send_connected_notice(self, now: Optional[datetime] = None):
        now = now or datetime.now(ALERT_TIMEZONE)
        text = format_connected_notice(self.app_name, self.settings["session_id"], now)
        await self.alert(text, self.user_id)
        await self.alert(text, self.channel_id)
        logger.info(f"Sent connected notice for {self.app_name}")

    async def send_invalid_session_alert(self, now: Optional[datetime] = None) -> bool:
        """One logout alert per cooldown window; the previous alert is replaced"""
        now = now or datetime.now(timezone.utc)
        if self.last_logout_alert and now - self.last_logout_alert < LOGOUT_ALERT_COOLDOWN:
            logger.info("Skipping logout alert, cooldown not expired")
            return False

        text = format_logout_notice(
            self.app_name, self.settings["session_id"], now.astimezone(ALERT_TIMEZONE),
            self.settings["restart_delay_minutes"], self.settings.get("owner_label", "there"),
        )
        if self.last_logout_message_id and self.user_id and self.notifier is not None:
            await self.notifier.delete(self.user_id, self.last_logout_message_id)

        message_id = await self.alert(text, self.user_id)
        if not message_id:
            return False
        self.last_logout_message_id = message_id
        self.last_logout_alert = now

        await self.alert(text, self.channel_id)

        if self.heroku is None:
            logger.warning("HEROKU_API_KEY is not set, cannot persist LAST_LOGOUT_ALERT")
            return True
        try:
            await self.heroku.patch_config(
                self.app_name, {"LAST_LOGOUT_ALERT": now.strftime("%Y-%m-%dT%H:%M:%S.000Z")}
            )
        except PlatformError as e:
            logger.error(f"Persisting LAST_LOGOUT_ALERT failed: {e.message}")
        return True

    async def load_last_logout_alert(self):
        if self.heroku is None:
            return
        try:
            config_vars = await self.heroku.get_config(self.app_name)
        except PlatformError as e:
            logger.error(f"Loading LAST_LOGOUT_ALERT failed: {e.message}")
            return
        self.last_logout_alert = parse_alert_time(config_vars.get("LAST_LOGOUT_ALERT"))
        if self.last_logout_alert:
            logger.info(f"Loaded LAST_LOGOUT_ALERT: {self.last_logout_alert.isoformat()}")

    # Output handling

    async def handle_line(self, line: str):
        if R14_MARKER in line:
            await self.alert(f"R14 memory error detected for [{self.app_name}]")
        if QUOTA_MARKER in line:
            await self.alert(
                f"🚨 DATABASE QUOTA EXCEEDED 🚨\n\nApp: {self.app_name}\n"
                f"Data transfer quota exceeded. The database is likely offline."
            )
        if INVALID_SESSION_MARKER in line:
            self.schedule_restart()
        if CONNECTED_MARKER in line:
            await self.send_connected_notice()

    def schedule_restart(self):
        if self.restart_scheduled:
            return
        self.restart_scheduled = True
        delay = self.settings["restart_delay_minutes"]
        logger.warning(f"INVALID SESSION ID detected, exiting in {delay} minute(s)")
        self._tasks.append(asyncio.create_task(self.send_invalid_session_alert()))
        self._tasks.append(asyncio.create_task(self._exit_after(delay * 60)))

    async def _exit_after(self, seconds: float):
        await asyncio.sleep(seconds)
        self.request_exit(1)

    def request_exit(self, code: int):
        if self.exit_code is None:
            self.exit_code = code
        self._stopped.set()

    async def check_logs_once(self):
        """Scan the app's recent platform logs for memory errors and crashes"""
        if self.heroku is None:
            return
        try:
            logs = await self.heroku.fetch_logs(self.app_name, 150, source="app")
        except PlatformError as e:
            logger.error(f"Monitoring Heroku logs failed: {e.message}")
            return
        if R14_MARKER in logs:
            logger.info("R14 detected in Heroku logs")
            await self.alert(f"R14 memory error detected for [{self.app_name}]")
        if any(marker in logs for marker in CRASH_MARKERS):
            logger.error("Crash detected in Heroku logs, exiting so the dyno restarts")
            self.request_exit(1)

    async def monitor_logs(self):
        while True:
            await asyncio.sleep(self.settings["log_poll_interval"])
            await self.check_logs_once()

    # Child process

    def write_config_env(self) -> str:
        path = os.path.join(self.settings["levanter_dir"], "config.env")
        lines = ["VPS=true", f"SESSION_ID={self.settings['session_id']}"]
        if self.settings.get("status_view_emoji"):
            lines.append(f"STATUS_VIEW_EMOJI={self.settings['status_view_emoji']}")
        with open(path, "w") as f:
            f.write("\n".join(lines))
        return path

    async def _pump(self, stream: asyncio.StreamReader, level: int):
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").rstrip()
            logger.log(level, line)
            await self.handle_line(line)

    def should_restart(self, now: float) -> bool:
        """Count a crash; False once the child crashes too often in a short window"""
        if now - self.last_restart_time > self.settings["restart_window"]:
            self.restart_count = 0
        self.last_restart_time = now
        self.restart_count += 1
        return self.restart_count <= self.settings["max_restarts"]

    async def run_child(self):
        loop = asyncio.get_running_loop()
        while not self._stopped.is_set():
            self.process = await asyncio.create_subprocess_exec(
                "node", "index.js", cwd=self.settings["levanter_dir"],
                stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
            )
            monitor = ResourceMonitor(self.process.pid)
            sampler = asyncio.create_task(monitor.monitor_loop())
            try:
                await asyncio.gather(
                    self._pump(self.process.stdout, logging.INFO),
                    self._pump(self.process.stderr, logging.ERROR),
                )
                code = await self.process.wait()
            finally:
                sampler.cancel()

            if self.restart_scheduled:
                return
            message = f"[LEVANTER_ERROR] Bot process exited with code {code}. Restarting..."
            logger.warning(message)
            await self.alert(message)
            if not self.should_restart(loop.time()):
                logger.error("Continuous crash detected. Stopping retries.")
                self.request_exit(1)
                return
            await asyncio.sleep(self.settings["restart_backoff"])

    async def run(self) -> int:
        await self.load_last_logout_alert()

        if not os.path.exists(os.path.join(self.settings["levanter_dir"], "package.json")):
            logger.error("❌ Levanter folder not found!")
            return 1
        self.write_config_env()

        self._tasks.append(asyncio.create_task(self.monitor_logs()))
        logger.info("🕒 Waiting for system to stabilize...")
        await asyncio.sleep(self.settings["startup_delay"])
        self._tasks.append(asyncio.create_task(self.run_child()))

        try:
            await self._stopped.wait()
        finally:
            await self.shutdown()
        return self.exit_code or 0

    async def shutdown(self):
        for task in self._tasks:
            task.cancel()
        if self.process is not None and self.process.returncode is None:
            self.process.terminate()
        if self.heroku is not None:
            await self.heroku.close()


async def run_supervisor(settings: Dict) -> int:
    heroku = HerokuClient(settings["heroku_api_key"]) if settings["heroku_api_key"] else None
    if not settings["bot_token"]:
        return await LevanterSupervisor(settings, None, heroku).run()

    bot = Bot(settings["bot_token"])
    notifier = Notifier(bot, settings["user_id"] or None, settings["channel_id"] or None)
    async with bot:
        return await LevanterSupervisor(settings, notifier, heroku).run()


def main():
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.INFO
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    sys.exit(asyncio.run(run_supervisor(load_settings())))


if __name__ == "__main__":
    main()
