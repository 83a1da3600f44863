#!/usr/bin/env python3
"""
Levanter deploy bot: deploys and manages WhatsApp bots on Heroku from a
Telegram chat.
"""

import sys
import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Set

from telegram import Update, InlineKeyboardButton
from telegram.error import BadRequest, TelegramError
from telegram.ext import Application, CommandHandler, MessageHandler, CallbackQueryHandler, filters, ContextTypes

from config_manager import Config
from database_manager import DatabaseManager
from heroku_client import HerokuClient, PlatformError, AppNotFoundError
from security_manager import SecurityManager
from conversation_store import ConversationStore, ConversationState, Step, make_callback_data, parse_callback_data
from rendezvous import RendezvousRegistry
from notification_relay import Notifier, as_markup
from app_manager import AppManager, split_message
from deployment_pipeline import DeploymentPipeline
from channel_relay import ChannelRelay
from reminder_scheduler import ReminderScheduler, TrialScheduler
from health_check import HealthMonitor

logger = logging.getLogger(__name__)

WIZARD_CHOICES = [
    ("👀 View statuses", "no-dl"),
    ("📥 View and save statuses", "true"),
    ("🚫 Ignore statuses", "false"),
]

# Payload fields each button action needs; anything shorter is a malformed token
CALLBACK_ARITY = {
    "select_app": 1, "info": 1, "restart": 1, "logs": 1, "redeploy": 1, "setvar": 1,
    "delete": 1, "confirm_delete": 1, "update_session": 1, "confirm_deploy": 1, "genkey": 1,
    "var": 2, "wiz": 2,
    "setbool": 3,
}


def button(text: str, action: str, *args) -> InlineKeyboardButton:
    return InlineKeyboardButton(text, callback_data=make_callback_data(action, *args))


def main_menu_buttons(is_admin: bool) -> List[List[InlineKeyboardButton]]:
    buttons = [
        [button("🚀 Deploy", "deploy"), button("🎁 Free trial", "free_trial")],
        [button("📦 My apps", "my_apps")],
    ]
    if is_admin:
        buttons.append([button("🔑 Generate key", "genkey_menu"), button("📋 All apps", "all_apps")])
    return buttons


def app_list_buttons(apps: List[str]) -> List[List[InlineKeyboardButton]]:
    return [[button(f"📱 {app}", "select_app", app)] for app in apps]


def management_buttons(app_name: str) -> List[List[InlineKeyboardButton]]:
    return [
        [button("ℹ️ Info", "info", app_name), button("🔄 Restart", "restart", app_name)],
        [button("📜 Logs", "logs", app_name), button("🔁 Redeploy", "redeploy", app_name)],
        [button("⚙️ Settings", "setvar", app_name), button("🔐 New session", "update_session", app_name)],
        [button("🗑 Delete", "delete", app_name), button("⬅️ Back", "my_apps")],
    ]


class DeployBot:
    def __init__(self, config: Config, db: Optional[DatabaseManager] = None,
                 heroku: Optional[HerokuClient] = None, notifier: Optional[Notifier] = None):
        self.config = config
        self.db = db or DatabaseManager(
            config.get("database_path", "deploy_bot.db"),
            free_trial_cooldown=timedelta(days=config.get("free_trial_cooldown_days", 14)),
        )
        self.heroku = heroku or HerokuClient(config.get("heroku_api_key", ""))
        self.security = SecurityManager(config)
        self.conversations = ConversationStore()
        self.rendezvous = RendezvousRegistry()
        self.health_monitor: Optional[HealthMonitor] = None
        self._background: Set[asyncio.Task] = set()

        self.notifier: Optional[Notifier] = None
        self.trial_scheduler: Optional[TrialScheduler] = None
        self.app_manager: Optional[AppManager] = None
        self.pipeline: Optional[DeploymentPipeline] = None
        self.channel_relay: Optional[ChannelRelay] = None
        self.reminders: Optional[ReminderScheduler] = None
        if notifier is not None:
            self.attach_notifier(notifier)

        self._text_steps = {
            Step.AWAITING_KEY: self._on_key,
            Step.SESSION_ID: self._on_session_id,
            Step.APP_NAME: self._on_app_name,
            Step.AWAITING_VAR_VALUE: self._on_var_value,
            Step.AWAITING_NEW_SESSION: self._on_new_session,
            Step.AWAITING_APP_FOR_ADD: self._on_app_for_add,
            Step.AWAITING_APP_FOR_REMOVAL: self._on_app_for_removal,
        }
        self._callbacks = {
            "deploy": self._cb_deploy,
            "free_trial": self._cb_free_trial,
            "my_apps": self._cb_my_apps,
            "cancel": self._cb_cancel,
            "select_app": self._cb_select_app,
            "info": self._cb_info,
            "restart": self._cb_restart,
            "logs": self._cb_logs,
            "redeploy": self._cb_redeploy,
            "setvar": self._cb_setvar,
            "var": self._cb_var,
            "setbool": self._cb_setbool,
            "delete": self._cb_delete,
            "confirm_delete": self._cb_confirm_delete,
            "update_session": self._cb_update_session,
            "wiz": self._cb_wizard_choice,
            "confirm_deploy": self._cb_confirm_deploy,
            "genkey_menu": self._cb_genkey_menu,
            "genkey": self._cb_genkey,
            "all_apps": self._cb_all_apps,
        }

    def attach_notifier(self, notifier: Notifier):
        """Wire every collaborator that talks back to Telegram"""
        self.notifier = notifier
        self.trial_scheduler = TrialScheduler(
            notifier,
            warning_minutes=self.config.get("free_trial_warning_minutes", 55),
            lifetime_minutes=self.config.get("free_trial_minutes", 60),
        )
        self.app_manager = AppManager(self.config, self.db, self.heroku, notifier)
        self.app_manager.trial_scheduler = self.trial_scheduler
        self.pipeline = DeploymentPipeline(
            self.config, self.db, self.heroku, notifier, self.rendezvous, self.security,
            app_manager=self.app_manager, trial_scheduler=self.trial_scheduler,
        )
        self.channel_relay = ChannelRelay(self.db, self.rendezvous, notifier, self.config)
        self.reminders = ReminderScheduler(
            self.db, self.heroku, notifier,
            interval=self.config.get("reminder_interval", 3600),
            reminder_hours=self.config.get("logout_reminder_hours", 24),
            app_manager=self.app_manager,
        )

    # Helpers

    def is_admin(self, user_id: int) -> bool:
        return self.security.is_admin(user_id)

    def can_manage(self, user_id: int, app_name: str) -> bool:
        return self.is_admin(user_id) or self.db.get_ownership(user_id, app_name) is not None

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def respond(self, update: Update, text: str, buttons=None,
                      parse_mode: Optional[str] = None) -> Optional[int]:
        """Edit the pressed menu in place for callbacks, otherwise reply"""
        query = update.callback_query
        if query is not None and query.message is not None:
            try:
                await query.edit_message_text(text, reply_markup=as_markup(buttons), parse_mode=parse_mode)
                return query.message.message_id
            except BadRequest as e:
                if "not modified" in str(e).lower():
                    return query.message.message_id
                logger.warning(f"Could not edit menu, replying instead: {e}")
        message = await update.effective_message.reply_text(
            text, reply_markup=as_markup(buttons), parse_mode=parse_mode
        )
        return message.message_id

    async def show_apps(self, update: Update, user_id: int, header: str = "📦 Your apps:"):
        apps = self.db.list_apps(user_id)
        if not apps:
            await self.respond(update, "📭 You have no apps yet.", main_menu_buttons(self.is_admin(user_id)))
            return
        await self.respond(update, header, app_list_buttons(apps))

    async def show_management(self, update: Update, user_id: int, app_name: str, header: str = ""):
        message_id = await self.respond(
            update, f"{header}📱 Managing {app_name}\nChoose an action:", management_buttons(app_name)
        )
        state = self.conversations.get(user_id)
        if state is not None and state.app_name == app_name:
            self.conversations.advance(user_id, Step.APP_MANAGEMENT)
            state.anchor_message_id = message_id
        else:
            self.conversations.start(user_id, Step.APP_MANAGEMENT, message_id, app_name=app_name)

    async def ensure_context(self, update: Update, user_id: int, app_name: str, *steps: Step) -> bool:
        """
        A button is only honoured when it belongs to the app (and step) the
        user is currently on. Stale buttons re-prompt without touching state.
        """
        state = self.conversations.get(user_id)
        if state is not None and state.app_name == app_name and (not steps or state.step in steps):
            return True
        logger.info(f"User {user_id} pressed a stale button for {app_name}")
        await self.show_apps(update, user_id, "⚠️ That menu is out of date. Please select the app again:")
        return False

    # Commands

    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Start command handler"""
        user = update.effective_user
        self.conversations.clear(user.id)
        welcome_msg = (
            f"👋 Hi {user.first_name or 'there'}!\n\n"
            "I deploy Levanter WhatsApp bots to Heroku and keep an eye on them.\n\n"
            "Commands:\n"
            "/deploy - Deploy a new bot (needs a deploy key)\n"
            "/freetrial - Try a bot for free\n"
            "/myapps - Manage your bots\n"
            "/redeem <key> - Redeem a deploy key\n"
            "/cancel - Cancel the current action"
        )
        await update.message.reply_text(welcome_msg, reply_markup=as_markup(main_menu_buttons(self.is_admin(user.id))))

    async def cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        state = self.conversations.clear(update.effective_user.id)
        await update.message.reply_text("❌ Cancelled." if state else "Nothing to cancel.")

    async def deploy_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        self.conversations.clear(update.effective_user.id)
        await self._begin_deploy(update, update.effective_user.id)

    async def free_trial_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        self.conversations.clear(update.effective_user.id)
        await self._begin_free_trial(update, update.effective_user.id)

    async def my_apps(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        user_id = update.effective_user.id
        self.conversations.clear(user_id)
        await self.show_apps(update, user_id)

    async def redeem(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        user_id = update.effective_user.id
        self.conversations.clear(user_id)
        if not context.args:
            await update.message.reply_text("❓ Usage: /redeem <key>")
            return
        async with self.conversations.lock_for(user_id):
            await self._redeem_key(update, user_id, context.args[0])

    async def add_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/add <user_id> [app_name] - assign an app to a user"""
        user_id = update.effective_user.id
        if not self.is_admin(user_id):
            return
        self.conversations.clear(user_id)
        if not context.args or not context.args[0].isdigit():
            await update.message.reply_text("❓ Usage: /add <user_id> [app_name]")
            return
        target = int(context.args[0])
        if len(context.args) > 1:
            await self._assign_app(update, target, context.args[1].lower())
            return
        self.conversations.start(user_id, Step.AWAITING_APP_FOR_ADD, target_user_id=target)
        await update.message.reply_text(f"Send the app name to assign to {target}:")

    async def remove_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/remove [app_name] - drop an app from the ownership records"""
        user_id = update.effective_user.id
        if not self.is_admin(user_id):
            return
        self.conversations.clear(user_id)
        if context.args:
            await self._unassign_app(update, context.args[0].lower())
            return
        self.conversations.start(user_id, Step.AWAITING_APP_FOR_REMOVAL)
        await update.message.reply_text("Send the app name to remove from the records:")

    async def all_apps_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self.is_admin(update.effective_user.id):
            return
        await self._show_all_apps(update)

    async def genkey_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        user_id = update.effective_user.id
        if not self.is_admin(user_id):
            return
        if context.args and context.args[0].isdigit():
            await self._generate_key(update, user_id, int(context.args[0]))
            return
        await self._cb_genkey_menu(update, user_id, [])

    async def keys_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self.is_admin(update.effective_user.id):
            return
        keys = self.db.list_deploy_keys()
        if not keys:
            await update.message.reply_text("🔑 No active deploy keys.")
            return
        lines = ["🔑 Active deploy keys:"]
        lines.extend(f"• {k['key']} - {k['uses_left']} use(s) left" for k in keys)
        await update.message.reply_text("\n".join(lines))

    async def stats_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self.is_admin(update.effective_user.id):
            return
        stats = self.db.get_global_statistics()
        await update.message.reply_text(
            "📊 Statistics\n\n"
            f"Apps: {stats['total_apps']}\n"
            f"Owners: {stats['total_owners']}\n"
            f"Deploy keys: {stats['deploy_keys']} ({stats['deploy_key_uses_left']} uses left)\n"
            f"Free trial users: {stats['free_trial_users']}\n"
            f"Pending deployments: {len(self.rendezvous)}\n"
            f"Active conversations: {len(self.conversations)}"
        )

    # Flows shared by commands and buttons

    async def _begin_deploy(self, update: Update, user_id: int):
        if self.is_admin(user_id):
            self.conversations.start(user_id, Step.SESSION_ID, free_trial=False)
            await self.respond(update, "🔐 Send the SESSION_ID for the new bot:")
            return
        self.conversations.start(user_id, Step.AWAITING_KEY)
        await self.respond(update, "🔑 Send your deploy key:")

    async def _begin_free_trial(self, update: Update, user_id: int):
        eligible, retry_at = self.db.can_deploy_free_trial(user_id)
        if not eligible:
            await self.respond(update, f"⏳ You already used your free trial. Try again after {retry_at:%Y-%m-%d %H:%M} UTC.")
            return
        self.conversations.start(user_id, Step.SESSION_ID, free_trial=True)
        minutes = self.config.get("free_trial_minutes", 60)
        await self.respond(update, f"🎁 Free trial: your bot runs for {minutes} minutes.\n\n🔐 Send your SESSION_ID:")

    async def _redeem_key(self, update: Update, user_id: int, key: str) -> bool:
        remaining = self.db.redeem_deploy_key(key.strip().upper())
        if remaining is None:
            await update.message.reply_text("❌ Invalid or used-up key. Try again or /cancel.")
            return False
        logger.info(f"User {user_id} redeemed a deploy key ({remaining} use(s) left)")
        self.conversations.start(user_id, Step.SESSION_ID, free_trial=False)
        await update.message.reply_text("✅ Key accepted!\n\n🔐 Send the SESSION_ID for your bot:")
        if remaining == 0:
            await self.notifier.notify_admin(f"🔑 Key {key.upper()} was used up by {user_id}")
        return True

    async def _assign_app(self, update: Update, target_user_id: int, app_name: str):
        try:
            await self.heroku.get_app(app_name)
        except AppNotFoundError:
            await update.message.reply_text(f"❌ {app_name} does not exist on Heroku.")
            return
        except PlatformError as e:
            await update.message.reply_text(f"❌ Heroku error: {e.message}")
            return
        previous = self.db.transfer_ownership(app_name, target_user_id)
        await update.message.reply_text(f"✅ {app_name} now belongs to {target_user_id}.")
        await self.notifier.send(target_user_id, f"📦 The app {app_name} was added to your account. See /myapps.")
        if previous is not None and previous != target_user_id:
            await self.notifier.send(previous, f"📦 The app {app_name} was moved to another account.")

    async def _unassign_app(self, update: Update, app_name: str):
        removed = self.db.remove_app(app_name)
        if removed:
            await update.message.reply_text(f"✅ Removed {app_name} from the records.")
        else:
            await update.message.reply_text(f"❌ No records for {app_name}.")

    async def _show_all_apps(self, update: Update):
        rows = self.db.list_all()
        if not rows:
            await self.respond(update, "📭 No apps recorded.")
            return
        lines = [f"📋 All apps ({len(rows)}):"]
        lines.extend(f"• {row['app_name']} - {row['user_id']}" for row in rows)
        for chunk in split_message("\n".join(lines)):
            await update.effective_message.reply_text(chunk)

    async def _generate_key(self, update: Update, user_id: int, uses: int):
        try:
            key = self.db.create_deploy_key(uses, user_id)
        except ValueError as e:
            await self.respond(update, f"❌ {e}")
            return
        await self.respond(update, f"🔑 New deploy key: `{key}` ({uses} use(s))", parse_mode="Markdown")

    async def _run_deploy(self, user_id: int, chat_id: int, state: ConversationState):
        app_name = state.app_name
        try:
            outcome = await self.pipeline.deploy(
                user_id, chat_id, app_name, state.data["session_id"],
                overrides=state.data.get("overrides"),
                free_trial=state.data.get("free_trial", False),
                message_id=state.anchor_message_id,
            )
        finally:
            current = self.conversations.get(user_id)
            if current is not None and current.step == Step.BUILDING and current.app_name == app_name:
                self.conversations.clear(user_id)
        if outcome.ok:
            await self.notifier.send(chat_id, f"📱 Manage {app_name} any time from /myapps.")
            await self.notifier.notify_admin(f"🚀 {user_id} deployed {app_name}")

    async def _run_session_update(self, user_id: int, chat_id: int, app_name: str, session_id: str):
        try:
            await self.pipeline.update_session(user_id, chat_id, app_name, session_id)
        finally:
            current = self.conversations.get(user_id)
            if current is not None and current.step == Step.BUILDING and current.app_name == app_name:
                self.conversations.clear(user_id)

    # Text input

    async def handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Route plain text by the user's conversation step"""
        user_id = update.effective_user.id
        text = (update.message.text or "").strip()

        async with self.conversations.lock_for(user_id):
            state = self.conversations.get(user_id)
            if state is None:
                await update.message.reply_text("Send /start to see what I can do.")
                return
            handler = self._text_steps.get(state.step)
            if handler is None:
                await update.message.reply_text("Please use the buttons above, or /cancel.")
                return
            await handler(update, user_id, state, text)

    async def _on_key(self, update: Update, user_id: int, state: ConversationState, text: str):
        await self._redeem_key(update, user_id, text)

    async def _on_session_id(self, update: Update, user_id: int, state: ConversationState, text: str):
        valid, violations = self.security.validate_session_id(text)
        if not valid:
            await update.message.reply_text("❌ " + "\n".join(violations) + "\nSend it again or /cancel.")
            return
        self.conversations.advance(user_id, Step.APP_NAME, session_id=text)
        await update.message.reply_text(
            "📝 Now send a name for your app.\n"
            "Lowercase letters, digits and dashes, 5 to 30 characters."
        )

    async def _on_app_name(self, update: Update, user_id: int, state: ConversationState, text: str):
        app_name = text.lower()
        valid, violations = self.security.validate_app_name(app_name)
        if not valid:
            await update.message.reply_text("❌ " + "\n".join(violations) + "\nTry another name or /cancel.")
            return

        try:
            await self.heroku.get_app(app_name)
            taken = True
        except AppNotFoundError:
            taken = False
        except PlatformError as e:
            # 403 means the app exists under another account
            taken = e.status == 403
        if taken:
            await update.message.reply_text(f"❌ The name {app_name} is already taken. Try another one.")
            return

        self.conversations.advance(user_id, Step.AWAITING_WIZARD_CHOICE, app_name=app_name, overrides={})
        buttons = [[button(label, "wiz", app_name, value)] for label, value in WIZARD_CHOICES]
        buttons.append([button("❌ Cancel", "cancel")])
        message = await update.message.reply_text(
            f"⚙️ How should {app_name} handle WhatsApp statuses?", reply_markup=as_markup(buttons)
        )
        state.anchor_message_id = message.message_id

    async def _on_var_value(self, update: Update, user_id: int, state: ConversationState, text: str):
        app_name, var_name = state.app_name, state.data.get("var_name")
        valid, violations = self.security.validate_var(var_name, text)
        if not valid:
            await update.message.reply_text("❌ " + "\n".join(violations) + "\nSend another value or /cancel.")
            return
        ok, _ = await self.app_manager.run(update.effective_chat.id, app_name,
                                           lambda: self.app_manager.set_var(app_name, var_name, text))
        if not ok:
            self.conversations.clear(user_id)
            return
        self.conversations.advance(user_id, Step.APP_MANAGEMENT)
        await update.message.reply_text(f"✅ {var_name} updated on {app_name}. The bot restarts to apply it.",
                                        reply_markup=as_markup(management_buttons(app_name)))

    async def _on_new_session(self, update: Update, user_id: int, state: ConversationState, text: str):
        valid, violations = self.security.validate_session_id(text)
        if not valid:
            await update.message.reply_text("❌ " + "\n".join(violations) + "\nSend it again or /cancel.")
            return
        app_name = state.app_name
        self.conversations.advance(user_id, Step.BUILDING)
        self.spawn(self._run_session_update(user_id, update.effective_chat.id, app_name, text))

    async def _on_app_for_add(self, update: Update, user_id: int, state: ConversationState, text: str):
        self.conversations.clear(user_id)
        await self._assign_app(update, state.data["target_user_id"], text.lower())

    async def _on_app_for_removal(self, update: Update, user_id: int, state: ConversationState, text: str):
        self.conversations.clear(user_id)
        await self._unassign_app(update, text.lower())

    # Buttons

    async def button_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle button callbacks"""
        query = update.callback_query
        await query.answer()

        user_id = update.effective_user.id
        action, args = parse_callback_data(query.data)
        handler = self._callbacks.get(action)
        if handler is None:
            logger.warning(f"Unknown callback action {action!r} from {user_id}")
            return
        if len(args) < CALLBACK_ARITY.get(action, 0):
            logger.warning(f"Malformed callback {query.data!r} from {user_id}")
            return

        async with self.conversations.lock_for(user_id):
            await handler(update, user_id, args)

    async def _cb_deploy(self, update: Update, user_id: int, args: List[str]):
        await self._begin_deploy(update, user_id)

    async def _cb_free_trial(self, update: Update, user_id: int, args: List[str]):
        await self._begin_free_trial(update, user_id)

    async def _cb_my_apps(self, update: Update, user_id: int, args: List[str]):
        self.conversations.clear(user_id)
        await self.show_apps(update, user_id)

    async def _cb_cancel(self, update: Update, user_id: int, args: List[str]):
        self.conversations.clear(user_id)
        await self.respond(update, "❌ Cancelled.")

    async def _cb_select_app(self, update: Update, user_id: int, args: List[str]):
        app_name = args[0]
        if not self.can_manage(user_id, app_name):
            await self.respond(update, "❌ That app is not yours.")
            return
        self.conversations.clear(user_id)
        await self.show_management(update, user_id, app_name)

    async def _cb_info(self, update: Update, user_id: int, args: List[str]):
        app_name = args[0]
        if not await self.ensure_context(update, user_id, app_name):
            return
        ok, info = await self.app_manager.run(update.effective_chat.id, app_name,
                                              lambda: self.app_manager.get_info(app_name))
        if ok:
            await self.respond(update, info, management_buttons(app_name), parse_mode="Markdown")

    async def _cb_restart(self, update: Update, user_id: int, args: List[str]):
        app_name = args[0]
        if not await self.ensure_context(update, user_id, app_name):
            return
        ok, _ = await self.app_manager.run(update.effective_chat.id, app_name,
                                           lambda: self.app_manager.restart(app_name))
        if ok:
            await self.respond(update, f"🔄 {app_name} is restarting.", management_buttons(app_name))

    async def _cb_logs(self, update: Update, user_id: int, args: List[str]):
        app_name = args[0]
        if not await self.ensure_context(update, user_id, app_name):
            return
        ok, logs = await self.app_manager.run(update.effective_chat.id, app_name,
                                              lambda: self.app_manager.get_logs(app_name))
        if not ok:
            return
        chat_id = update.effective_chat.id
        await self.notifier.send(chat_id, f"📜 Logs for {app_name}:")
        for chunk in split_message(logs):
            await self.notifier.send(chat_id, chunk)

    async def _cb_redeploy(self, update: Update, user_id: int, args: List[str]):
        app_name = args[0]
        if not await self.ensure_context(update, user_id, app_name):
            return
        chat_id = update.effective_chat.id
        self.spawn(self.app_manager.run(chat_id, app_name, lambda: self.pipeline.redeploy(chat_id, app_name)))

    async def _cb_setvar(self, update: Update, user_id: int, args: List[str]):
        app_name = args[0]
        if not await self.ensure_context(update, user_id, app_name):
            return
        buttons = [[button(name, "var", app_name, name)] for name in self.config.editable_vars()]
        buttons.append([button("⬅️ Back", "select_app", app_name)])
        await self.respond(update, f"⚙️ Which setting of {app_name} do you want to change?", buttons)

    async def _cb_var(self, update: Update, user_id: int, args: List[str]):
        app_name, var_name = args[0], args[1]
        if not await self.ensure_context(update, user_id, app_name):
            return
        ok, current = await self.app_manager.run(update.effective_chat.id, app_name,
                                                 lambda: self.app_manager.get_var(app_name, var_name))
        if not ok:
            return
        if self.config.is_boolean_var(var_name):
            buttons = [
                [button("✅ true", "setbool", app_name, var_name, "true"),
                 button("❌ false", "setbool", app_name, var_name, "false")],
                [button("⬅️ Back", "setvar", app_name)],
            ]
            await self.respond(update, f"{var_name} is currently: {current or 'not set'}", buttons)
            return
        self.conversations.advance(user_id, Step.AWAITING_VAR_VALUE, var_name=var_name)
        await self.respond(update, f"{var_name} is currently: {current or 'not set'}\n\nSend the new value:")

    async def _cb_setbool(self, update: Update, user_id: int, args: List[str]):
        app_name, var_name, value = args[0], args[1], args[2]
        if not await self.ensure_context(update, user_id, app_name, Step.APP_MANAGEMENT, Step.AWAITING_VAR_VALUE):
            return
        valid, violations = self.security.validate_var(var_name, value)
        if not valid:
            await self.respond(update, "❌ " + "\n".join(violations), management_buttons(app_name))
            return
        ok, _ = await self.app_manager.run(update.effective_chat.id, app_name,
                                           lambda: self.app_manager.set_var(app_name, var_name, value))
        if ok:
            self.conversations.advance(user_id, Step.APP_MANAGEMENT)
            await self.respond(update, f"✅ {var_name} set to {value} on {app_name}.", management_buttons(app_name))

    async def _cb_delete(self, update: Update, user_id: int, args: List[str]):
        app_name = args[0]
        if not await self.ensure_context(update, user_id, app_name):
            return
        self.conversations.advance(user_id, Step.AWAITING_DELETE_CONFIRMATION)
        buttons = [[button("🗑 Yes, delete it", "confirm_delete", app_name),
                    button("⬅️ No", "select_app", app_name)]]
        await self.respond(update, f"⚠️ Delete {app_name}? This cannot be undone.", buttons)

    async def _cb_confirm_delete(self, update: Update, user_id: int, args: List[str]):
        app_name = args[0]
        if not await self.ensure_context(update, user_id, app_name, Step.AWAITING_DELETE_CONFIRMATION):
            return
        ok, _ = await self.app_manager.run(update.effective_chat.id, app_name,
                                           lambda: self.app_manager.delete(app_name))
        self.conversations.clear(user_id)
        if ok:
            await self.respond(update, f"🗑 {app_name} was deleted.")

    async def _cb_update_session(self, update: Update, user_id: int, args: List[str]):
        # Also pressed from notices, where no conversation exists yet
        app_name = args[0]
        if not self.can_manage(user_id, app_name):
            await self.respond(update, "❌ That app is not yours.")
            return
        self.conversations.start(user_id, Step.AWAITING_NEW_SESSION, app_name=app_name)
        await update.effective_message.reply_text(f"🔐 Send the new SESSION_ID for {app_name}:")

    async def _cb_wizard_choice(self, update: Update, user_id: int, args: List[str]):
        app_name, value = args[0], args[1]
        if not await self.ensure_context(update, user_id, app_name, Step.AWAITING_WIZARD_CHOICE):
            return
        state = self.conversations.get(user_id)
        state.data.setdefault("overrides", {})["AUTO_STATUS_VIEW"] = value
        buttons = [[button("🚀 Deploy", "confirm_deploy", app_name), button("❌ Cancel", "cancel")]]
        await self.respond(update, f"📋 Ready to deploy {app_name}\nStatus handling: {value}", buttons)

    async def _cb_confirm_deploy(self, update: Update, user_id: int, args: List[str]):
        app_name = args[0]
        if not await self.ensure_context(update, user_id, app_name, Step.AWAITING_WIZARD_CHOICE):
            return
        state = self.conversations.advance(user_id, Step.BUILDING)
        if update.callback_query is not None and update.callback_query.message is not None:
            state.anchor_message_id = update.callback_query.message.message_id
        self.spawn(self._run_deploy(user_id, update.effective_chat.id, state))

    async def _cb_genkey_menu(self, update: Update, user_id: int, args: List[str]):
        if not self.is_admin(user_id):
            return
        buttons = [[button(f"{n} use(s)", "genkey", n) for n in (1, 3, 5, 10)]]
        await self.respond(update, "🔑 How many uses should the key have?", buttons)

    async def _cb_genkey(self, update: Update, user_id: int, args: List[str]):
        if not self.is_admin(user_id) or not args or not args[0].isdigit():
            return
        await self._generate_key(update, user_id, int(args[0]))

    async def _cb_all_apps(self, update: Update, user_id: int, args: List[str]):
        if self.is_admin(user_id):
            await self._show_all_apps(update)

    # Channel posts and errors

    async def handle_channel_post(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        post = update.channel_post
        if post is None:
            return
        await self.channel_relay.handle_text(post.text or post.caption or "")

    async def on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE):
        logger.error(f"Update {update} caused error: {context.error}", exc_info=context.error)
        if self.notifier is not None and not isinstance(context.error, TelegramError):
            await self.notifier.notify_admin(f"⚠️ Unhandled error: {context.error}")

    # Lifecycle

    async def post_init(self, application: Application):
        self.health_monitor = HealthMonitor(self, self.config.get("health_port", 8080))
        try:
            await self.health_monitor.start()
        except OSError as e:
            logger.error(f"Health server could not start: {e}")
            self.health_monitor = None
        self.reminders.start()
        logger.info("Deploy bot is up")

    async def post_shutdown(self, application: Application):
        if self.reminders is not None:
            self.reminders.stop()
        if self.trial_scheduler is not None:
            self.trial_scheduler.cancel_all()
        for task in list(self._background):
            task.cancel()
        self.rendezvous.clear()
        if self.health_monitor is not None:
            await self.health_monitor.stop()
        await self.heroku.close()

    def register_handlers(self, application: Application):
        application.add_handler(CommandHandler("start", self.start))
        application.add_handler(CommandHandler("cancel", self.cancel))
        application.add_handler(CommandHandler("deploy", self.deploy_command))
        application.add_handler(CommandHandler("freetrial", self.free_trial_command))
        application.add_handler(CommandHandler("myapps", self.my_apps))
        application.add_handler(CommandHandler("redeem", self.redeem))

        # Operator commands
        application.add_handler(CommandHandler("add", self.add_command))
        application.add_handler(CommandHandler("remove", self.remove_command))
        application.add_handler(CommandHandler("allapps", self.all_apps_command))
        application.add_handler(CommandHandler("genkey", self.genkey_command))
        application.add_handler(CommandHandler("keys", self.keys_command))
        application.add_handler(CommandHandler("stats", self.stats_command))

        application.add_handler(CallbackQueryHandler(self.button_callback))

        if self.config.channel_id:
            application.add_handler(MessageHandler(
                filters.UpdateType.CHANNEL_POSTS & filters.Chat(chat_id=self.config.channel_id),
                self.handle_channel_post
            ))

        application.add_handler(MessageHandler(
            filters.TEXT & ~filters.COMMAND & filters.ChatType.PRIVATE,
            self.handle_text
        ))
        application.add_error_handler(self.on_error)

    def build_application(self) -> Application:
        application = (
            Application.builder()
            .token(self.config.bot_token)
            .concurrent_updates(True)
            .post_init(self.post_init)
            .post_shutdown(self.post_shutdown)
            .build()
        )
        self.attach_notifier(Notifier(application.bot, self.config.admin_id, self.config.channel_id))
        self.register_handlers(application)
        return application


def main():
    """Main function"""
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.INFO
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    config = Config()
    if not config.bot_token:
        logger.error("❌ TELEGRAM_BOT_TOKEN is not set (environment or config.json)")
        sys.exit(1)
    if not config.get("heroku_api_key"):
        logger.warning("HEROKU_API_KEY is not set; every deployment will fail")
    if not config.channel_id:
        logger.warning("CHANNEL_ID is not set; deployments will always time out waiting for status")

    bot = DeployBot(config)
    application = bot.build_application()
    logger.info("🤖 Bot started! Press Ctrl+C to stop.")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
