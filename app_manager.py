"""
Per-app management actions (info, restart, logs, variables, delete)
and the one routine that cleans up after an app vanished from Heroku.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config_manager import Config
from database_manager import DatabaseManager
from heroku_client import HerokuClient, PlatformError, AppNotFoundError
from notification_relay import Notifier

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000
INFO_VARS = ["AUTO_STATUS_VIEW", "ALWAYS_ONLINE", "PREFIX", "STATUS_VIEW_EMOJI", "LAST_LOGOUT_ALERT"]


def mask_secret(value: Optional[str], visible: int = 6) -> str:
    if not value:
        return "not set"
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}…"


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    return [text[i:i + limit] for i in range(0, len(text), limit)] or [""]


class AppManager:
    def __init__(self, config: Config, db: DatabaseManager, heroku: HerokuClient, notifier: Notifier):
        self.config = config
        self.db = db
        self.heroku = heroku
        self.notifier = notifier
        self.trial_scheduler = None

    async def handle_not_found(self, app_name: str, chat_id: Optional[int] = None) -> List[int]:
        """
        The remote app is gone: drop its ownership rows, stop any trial
        timers and tell the owner (and whoever triggered the action).

        Returns the chat ids that were notified.
        """
        owner = self.db.find_owner(app_name)
        removed = self.db.remove_app(app_name)
        if self.trial_scheduler is not None:
            self.trial_scheduler.cancel(app_name)
        logger.warning(f"App {app_name} not found on Heroku; removed {removed} ownership row(s)")

        text = (
            f"⚠️ App `{app_name}` no longer exists on Heroku.\n"
            f"It has been removed from your apps."
        )
        notified = []
        if owner is not None:
            await self.notifier.send(owner["user_id"], text, parse_mode="Markdown")
            notified.append(owner["user_id"])
        if chat_id is not None and chat_id not in notified:
            await self.notifier.send(chat_id, text, parse_mode="Markdown")
            notified.append(chat_id)
        return notified

    async def run(self, chat_id: int, app_name: str,
                  operation: Callable[[], Awaitable[Any]]) -> Tuple[bool, Any]:
        """
        Run a platform operation for an app.

        Not-found goes through handle_not_found, other platform errors are
        reported with the platform's own message. Returns (ok, result).
        """
        try:
            return True, await operation()
        except AppNotFoundError:
            await self.handle_not_found(app_name, chat_id)
            return False, None
        except PlatformError as e:
            logger.error(f"Heroku error for {app_name}: {e.message}")
            await self.notifier.send(chat_id, f"❌ Heroku error for {app_name}: {e.message}")
            return False, None

    async def get_info(self, app_name: str) -> str:
        app = await self.heroku.get_app(app_name)
        dynos = await self.heroku.list_dynos(app_name)
        config_vars = await self.heroku.get_config(app_name)
        owner = self.db.find_owner(app_name)

        dyno_lines = [f"  • {d.get('name', '?')}: {d.get('state', 'unknown')}" for d in dynos]
        if not dyno_lines:
            dyno_lines = ["  • no dynos running"]

        lines = [
            f"📱 *{app_name}*",
            f"🌐 {app.get('web_url') or 'no web url'}",
            f"🗺 Region: {(app.get('region') or {}).get('name', 'unknown')}",
            f"📅 Created: {app.get('created_at', 'unknown')}",
            f"🔐 Session: `{mask_secret(config_vars.get('SESSION_ID'))}`",
        ]
        if owner:
            lines.append(f"👤 Owner: `{owner['user_id']}`")
        lines.append("⚙️ Dynos:")
        lines.extend(dyno_lines)
        lines.append("🧩 Settings:")
        for name in INFO_VARS:
            if name in config_vars:
                lines.append(f"  • `{name}` = `{config_vars[name]}`")
        return "\n".join(lines)

    async def restart(self, app_name: str):
        await self.heroku.restart_dynos(app_name)
        logger.info(f"Restarted dynos of {app_name}")

    async def get_logs(self, app_name: str, lines: Optional[int] = None) -> str:
        lines = lines or self.config.get("log_lines", 100)
        logs = await self.heroku.fetch_logs(app_name, lines)
        return logs.strip() or "No logs available"

    async def set_var(self, app_name: str, name: str, value: Optional[str]) -> Dict[str, str]:
        logger.info(f"Setting {name} on {app_name}")
        return await self.heroku.patch_config(app_name, {name.upper(): value})

    async def get_var(self, app_name: str, name: str) -> Optional[str]:
        config_vars = await self.heroku.get_config(app_name)
        return config_vars.get(name.upper())

    async def delete(self, app_name: str):
        """Delete the remote app, then its ownership rows and trial timers"""
        await self.heroku.delete_app(app_name)
        self.db.remove_app(app_name)
        if self.trial_scheduler is not None:
            self.trial_scheduler.cancel(app_name)
        logger.info(f"Deleted app {app_name}")

    async def force_delete(self, app_name: str):
        """Delete even if the remote app is already gone"""
        try:
            await self.delete(app_name)
        except AppNotFoundError:
            self.db.remove_app(app_name)
            if self.trial_scheduler is not None:
                self.trial_scheduler.cancel(app_name)
            logger.info(f"App {app_name} was already gone; removed its records")
