"""
Inbound side of the relay: status lines the supervisors post to the
broadcast channel are turned into rendezvous outcomes and owner notices.
"""

import logging

from telegram import InlineKeyboardButton

from config_manager import Config
from conversation_store import make_callback_data
from database_manager import DatabaseManager
from notification_relay import Notifier
from rendezvous import RendezvousRegistry, SessionLoggedOut
from status_lines import parse_status_line, StatusEvent, LogoutEvent, ConnectedEvent

logger = logging.getLogger(__name__)


def update_session_button(app_name: str):
    return [[InlineKeyboardButton("🔐 Send new session ID",
                                  callback_data=make_callback_data("update_session", app_name))]]


class ChannelRelay:
    def __init__(self, db: DatabaseManager, rendezvous: RendezvousRegistry,
                 notifier: Notifier, config: Config):
        self.db = db
        self.rendezvous = rendezvous
        self.notifier = notifier
        self.config = config

    async def handle_text(self, text: str) -> StatusEvent:
        """Dispatch one channel post. Never raises."""
        event = parse_status_line(text)
        try:
            if isinstance(event, LogoutEvent):
                await self.on_logout(event.app_name)
            elif isinstance(event, ConnectedEvent):
                await self.on_connected(event.app_name)
        except Exception as e:
            logger.exception(f"Error handling channel post for {event}: {e}")
        return event

    async def on_logout(self, app_name: str):
        if self.rendezvous.reject(app_name, SessionLoggedOut(app_name)):
            logger.info(f"{app_name} logged out during a pending deployment")

        owner = self.db.find_owner(app_name)
        if owner is None:
            logger.warning(f"Logout notice for {app_name} which has no recorded owner")
            await self.notifier.notify_admin(f"⚠️ Logout notice for unowned app {app_name}")
            return

        text = (
            f"⚠️ Your bot `{app_name}` has been logged out of WhatsApp.\n\n"
            f"The session ID is no longer valid. Send a new one to bring it back online."
        )
        await self.notifier.send(owner["user_id"], text,
                                 buttons=update_session_button(app_name), parse_mode="Markdown")

    async def on_connected(self, app_name: str):
        if self.rendezvous.resolve(app_name):
            return

        owner = self.db.find_owner(app_name)
        if owner is None:
            logger.debug(f"Connected notice for unowned app {app_name}")
            return
        await self.notifier.send(owner["user_id"], f"✅ Your bot `{app_name}` is online.",
                                 parse_mode="Markdown")
