"""
Background timers: free-trial expiry and periodic logout reminders.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

from database_manager import DatabaseManager, utcnow
from heroku_client import HerokuClient, PlatformError, AppNotFoundError
from notification_relay import Notifier
from channel_relay import update_session_button

logger = logging.getLogger(__name__)


def parse_alert_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as written by the supervisor"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TrialScheduler:
    """Warns trial users before expiry, then deletes the app"""

    def __init__(self, notifier: Notifier, warning_minutes: float = 55, lifetime_minutes: float = 60):
        self.notifier = notifier
        self.warning_minutes = warning_minutes
        self.lifetime_minutes = lifetime_minutes
        self._tasks: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, app_name: str) -> bool:
        return app_name in self._tasks

    def schedule(self, user_id: int, app_name: str,
                 delete_app: Callable[[str], Awaitable[None]]) -> asyncio.Task:
        self.cancel(app_name)
        task = asyncio.create_task(self._run(user_id, app_name, delete_app))
        self._tasks[app_name] = task
        logger.info(f"Free trial for {app_name} expires in {self.lifetime_minutes} minutes")
        return task

    async def _run(self, user_id: int, app_name: str, delete_app: Callable[[str], Awaitable[None]]):
        try:
            warning_delay = max(0.0, self.warning_minutes * 60)
            await asyncio.sleep(warning_delay)
            remaining = max(0.0, self.lifetime_minutes - self.warning_minutes)
            await self.notifier.send(
                user_id,
                f"⏰ Your free trial app {app_name} will be deleted in {remaining:g} minute(s)."
            )
            await asyncio.sleep(remaining * 60)
            try:
                await delete_app(app_name)
            except AppNotFoundError:
                logger.info(f"Trial app {app_name} was already gone")
            except PlatformError as e:
                logger.error(f"Could not delete trial app {app_name}: {e.message}")
                await self.notifier.notify_admin(f"❌ Failed to delete trial app {app_name}: {e.message}")
                return
            await self.notifier.send(user_id, f"🗑 Your free trial app {app_name} has ended and was deleted.")
        finally:
            if self._tasks.get(app_name) is asyncio.current_task():
                del self._tasks[app_name]

    def cancel(self, app_name: str) -> bool:
        task = self._tasks.pop(app_name, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def cancel_all(self):
        for app_name in list(self._tasks):
            self.cancel(app_name)


class ReminderScheduler:
    """
    Hourly sweep over every owned app.

    An app whose dynos are all down and whose last logout alert is older
    than the reminder window gets a fresh reminder, and the alert
    timestamp is re-armed so the owner is reminded once per window.
    """

    def __init__(self, db: DatabaseManager, heroku: HerokuClient, notifier: Notifier,
                 interval: float = 3600, reminder_hours: float = 24, app_manager=None):
        self.db = db
        self.heroku = heroku
        self.notifier = notifier
        self.app_manager = app_manager
        self.interval = interval
        self.reminder_window = timedelta(hours=reminder_hours)
        self._task: Optional[asyncio.Task] = None

    async def is_due(self, app_name: str, now: datetime) -> bool:
        config_vars = await self.heroku.get_config(app_name)
        last_alert = parse_alert_time(config_vars.get("LAST_LOGOUT_ALERT"))
        if last_alert is None or now - last_alert < self.reminder_window:
            return False
        dynos = await self.heroku.list_dynos(app_name)
        return not any(d.get("state") == "up" for d in dynos)

    async def _forget(self, app_name: str):
        if self.app_manager is not None:
            await self.app_manager.handle_not_found(app_name)
            return
        removed = self.db.remove_app(app_name)
        logger.warning(f"App {app_name} not found on Heroku; removed {removed} ownership row(s)")

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        sent = 0
        for row in self.db.list_all():
            app_name = row["app_name"]
            try:
                if not await self.is_due(app_name, now):
                    continue
                await self.notifier.send(
                    row["user_id"],
                    f"🔔 Reminder: {app_name} is still logged out.\n"
                    f"Send a new session ID to bring it back online.",
                    buttons=update_session_button(app_name),
                )
                await self.heroku.patch_config(
                    app_name, {"LAST_LOGOUT_ALERT": now.strftime("%Y-%m-%dT%H:%M:%S.000Z")}
                )
                sent += 1
            except AppNotFoundError:
                await self._forget(app_name)
            except PlatformError as e:
                logger.warning(f"Reminder check for {app_name} failed: {e.message}")
        if sent:
            logger.info(f"Sent {sent} logout reminder(s)")
        return sent

    async def run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.exception(f"Reminder sweep failed: {e}")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
