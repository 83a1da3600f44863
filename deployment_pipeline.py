"""
Deployment pipeline: create -> add-ons -> buildpacks -> config vars ->
build -> poll -> persist ownership -> wait for the bot to connect.

Each run reports progress by editing a single anchor message and ends in
a DeployOutcome. Waiting for the connection goes through the rendezvous
registry, which the channel relay resolves from the supervisor's posts.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from config_manager import Config
from database_manager import DatabaseManager
from heroku_client import HerokuClient, PlatformError, AppNotFoundError, NameCollisionError
from notification_relay import Notifier
from rendezvous import RendezvousRegistry, WaitAlreadyRegistered, RendezvousTimeout, SessionLoggedOut
from security_manager import SecurityManager, PROTECTED_VARS
from channel_relay import update_session_button

logger = logging.getLogger(__name__)

ONLINE = "online"
LOGGED_OUT = "logged_out"
TIMEOUT = "timeout"
BUILD_FAILED = "build_failed"
CREATE_FAILED = "create_failed"
INVALID = "invalid"
NOT_FOUND = "not_found"
BUSY = "busy"

BUILD_SUCCEEDED = "succeeded"
BUILD_PENDING = "pending"


@dataclass
class DeployOutcome:
    status: str
    app_name: str
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == ONLINE


class DeploymentPipeline:
    def __init__(self, config: Config, db: DatabaseManager, heroku: HerokuClient,
                 notifier: Notifier, rendezvous: RendezvousRegistry, security: SecurityManager,
                 app_manager=None, trial_scheduler=None):
        self.config = config
        self.db = db
        self.heroku = heroku
        self.notifier = notifier
        self.rendezvous = rendezvous
        self.security = security
        self.app_manager = app_manager
        self.trial_scheduler = trial_scheduler

    def build_config_vars(self, app_name: str, session_id: str,
                          overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Defaults, then the user's choices, then the values the supervisor needs"""
        config_vars = dict(self.config.get("default_vars", {}))
        for name, value in (overrides or {}).items():
            if name.upper() not in PROTECTED_VARS:
                config_vars[name.upper()] = value

        config_vars["SESSION_ID"] = session_id
        config_vars["APP_NAME"] = app_name
        if self.config.get("heroku_api_key"):
            config_vars["HEROKU_API_KEY"] = self.config.get("heroku_api_key")
        if self.config.get("relay_bot_token"):
            config_vars["TELEGRAM_BOT_TOKEN"] = self.config.get("relay_bot_token")
        if self.config.admin_id:
            config_vars["TELEGRAM_USER_ID"] = str(self.config.admin_id)
        if self.config.channel_id:
            config_vars["TELEGRAM_CHANNEL_ID"] = str(self.config.channel_id)
        return config_vars

    async def _progress(self, chat_id: int, message_id: Optional[int], text: str) -> Optional[int]:
        return await self.notifier.send_or_edit(chat_id, message_id, text)

    async def _discard_app(self, app_name: str):
        """Best-effort removal of an app that never became owned"""
        try:
            await self.heroku.delete_app(app_name)
        except PlatformError as e:
            logger.warning(f"Could not clean up failed app {app_name}: {e.message}")

    async def deploy(self, user_id: int, chat_id: int, app_name: str, session_id: str,
                     overrides: Optional[Dict[str, str]] = None, free_trial: bool = False,
                     message_id: Optional[int] = None) -> DeployOutcome:
        valid, violations = self.security.validate_app_name(app_name)
        if valid:
            valid, violations = self.security.validate_session_id(session_id)
        if not valid:
            return await self._finish(chat_id, message_id,
                                      DeployOutcome(INVALID, app_name, "\n".join(violations)))

        if free_trial:
            eligible, retry_at = self.db.can_deploy_free_trial(user_id)
            if not eligible:
                return await self._finish(chat_id, message_id, DeployOutcome(
                    INVALID, app_name,
                    f"Free trial already used. Try again after {retry_at:%Y-%m-%d %H:%M} UTC."
                ))

        logger.info(f"User {user_id} deploying {app_name} (free trial: {free_trial})")
        message_id = await self._progress(chat_id, message_id, f"🚀 Creating app {app_name}...")

        try:
            await self.heroku.create_app(app_name)
        except NameCollisionError:
            return await self._finish(chat_id, message_id, DeployOutcome(
                CREATE_FAILED, app_name, f"The name {app_name} is already taken. Pick another one."
            ))
        except PlatformError as e:
            logger.error(f"Creating {app_name} failed: {e.message}")
            return await self._finish(chat_id, message_id,
                                      DeployOutcome(CREATE_FAILED, app_name, e.message))

        try:
            message_id = await self._progress(chat_id, message_id, "🧩 Adding database and buildpacks...")
            await self.heroku.configure_addons(app_name, self.config.get("addons", []))
            await self.heroku.configure_buildpacks(app_name, self.config.get("buildpacks", []))

            message_id = await self._progress(chat_id, message_id, "⚙️ Setting config vars...")
            await self.heroku.patch_config(app_name, self.build_config_vars(app_name, session_id, overrides))

            message_id = await self._progress(chat_id, message_id, "🔨 Starting build...")
            build_id = await self.heroku.trigger_build(app_name, self.config.get("source_tarball_url"))
        except PlatformError as e:
            logger.error(f"Setting up {app_name} failed: {e.message}")
            await self._discard_app(app_name)
            return await self._finish(chat_id, message_id,
                                      DeployOutcome(BUILD_FAILED, app_name, e.message))

        if not await self.wait_for_build(app_name, build_id, chat_id, message_id):
            await self._discard_app(app_name)
            return await self._finish(chat_id, message_id,
                                      DeployOutcome(BUILD_FAILED, app_name, "The build did not succeed."))

        # The app exists and is built; from here on it belongs to the user
        self.db.upsert_ownership(user_id, app_name, session_id)
        if free_trial:
            self.db.record_free_trial(user_id)
            self.db.mark_free_trial_app(user_id, app_name)

        outcome = await self.await_connection(app_name, chat_id, message_id,
                                              self.config.get("deploy_wait_timeout", 120))
        if outcome.ok and free_trial and self._schedule_trial(user_id, app_name):
            outcome.message += (
                f"\n⏳ This free trial app is deleted after "
                f"{self.config.get('free_trial_minutes', 60)} minutes."
            )
        return await self._finish(chat_id, message_id, outcome)

    def _schedule_trial(self, user_id: int, app_name: str) -> bool:
        """Start the trial clock unless it is already running"""
        if self.trial_scheduler is None or app_name in self.trial_scheduler:
            return False
        self.trial_scheduler.schedule(user_id, app_name, self._expire_trial_app)
        return True

    async def _expire_trial_app(self, app_name: str):
        """Tear down a trial app; one already gone on Heroku still loses its records"""
        if self.app_manager is not None:
            await self.app_manager.force_delete(app_name)
            return
        try:
            await self.heroku.delete_app(app_name)
        except AppNotFoundError:
            logger.info(f"Trial app {app_name} was already gone")
        self.db.remove_app(app_name)

    async def wait_for_build(self, app_name: str, build_id: str, chat_id: int,
                             message_id: Optional[int]) -> bool:
        """Poll the build until it leaves 'pending'; poll errors count as failure"""
        attempts = self.config.get("build_poll_attempts", 20)
        interval = self.config.get("build_poll_interval", 5)
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(interval)
            try:
                status = await self.heroku.poll_build(app_name, build_id)
            except PlatformError as e:
                logger.error(f"Polling build {build_id} of {app_name} failed: {e.message}")
                return False
            logger.debug(f"Build {build_id} of {app_name}: {status} ({attempt}/{attempts})")
            if status == BUILD_SUCCEEDED:
                return True
            if status != BUILD_PENDING:
                return False
            await self._progress(chat_id, message_id, f"🔨 Building {app_name}... ({attempt}/{attempts})")
        logger.warning(f"Build {build_id} of {app_name} still pending after {attempts} polls")
        return False

    async def await_connection(self, app_name: str, chat_id: int, message_id: Optional[int],
                               timeout: float) -> DeployOutcome:
        animation = self.notifier.start_animation(
            chat_id, message_id, f"📡 Waiting for {app_name} to connect",
            self.config.get("animation_interval", 2)
        )
        try:
            await self.rendezvous.wait_for(app_name, timeout, animation=animation)
        except WaitAlreadyRegistered:
            if animation is not None:
                animation.cancel()
            return DeployOutcome(BUSY, app_name, f"{app_name} is already waiting for a connection.")
        except SessionLoggedOut:
            return DeployOutcome(LOGGED_OUT, app_name,
                                 f"{app_name} could not log in: the session ID is invalid.")
        except RendezvousTimeout:
            return DeployOutcome(TIMEOUT, app_name,
                                 f"{app_name} did not report back in time. It may still come online.")
        return DeployOutcome(ONLINE, app_name, f"{app_name} is online.")

    async def _finish(self, chat_id: int, message_id: Optional[int], outcome: DeployOutcome) -> DeployOutcome:
        if outcome.ok:
            text = f"✅ {outcome.message}"
        else:
            text = f"❌ {outcome.message}"
        buttons = None
        if outcome.status in (LOGGED_OUT, TIMEOUT):
            buttons = update_session_button(outcome.app_name)
        await self.notifier.send_or_edit(chat_id, message_id, text, buttons)
        logger.info(f"Deployment of {outcome.app_name} finished: {outcome.status}")
        return outcome

    async def update_session(self, user_id: int, chat_id: int, app_name: str, session_id: str,
                             message_id: Optional[int] = None) -> DeployOutcome:
        """Swap the session ID of a running app and wait for it to reconnect"""
        valid, violations = self.security.validate_session_id(session_id)
        if not valid:
            return await self._finish(chat_id, message_id,
                                      DeployOutcome(INVALID, app_name, "\n".join(violations)))

        message_id = await self._progress(chat_id, message_id, f"🔐 Updating session of {app_name}...")
        try:
            await self.heroku.patch_config(app_name, {"SESSION_ID": session_id, "LAST_LOGOUT_ALERT": None})
            await self.heroku.restart_dynos(app_name)
        except AppNotFoundError:
            if self.app_manager is not None:
                await self.app_manager.handle_not_found(app_name, chat_id)
            else:
                self.db.remove_app(app_name)
            return DeployOutcome(NOT_FOUND, app_name, f"{app_name} no longer exists.")
        except PlatformError as e:
            return await self._finish(chat_id, message_id, DeployOutcome(BUILD_FAILED, app_name, e.message))

        self.db.upsert_ownership(user_id, app_name, session_id)
        outcome = await self.await_connection(app_name, chat_id, message_id,
                                              self.config.get("update_wait_timeout", 180))
        # A trial that never connected on its first deploy starts its clock now
        if outcome.ok and self.db.is_free_trial_app(app_name) and self._schedule_trial(user_id, app_name):
            outcome.message += (
                f"\n⏳ This free trial app is deleted after "
                f"{self.config.get('free_trial_minutes', 60)} minutes."
            )
        return await self._finish(chat_id, message_id, outcome)

    async def redeploy(self, chat_id: int, app_name: str, message_id: Optional[int] = None) -> bool:
        """Rebuild an existing app from the latest source. Platform errors propagate."""
        message_id = await self._progress(chat_id, message_id, f"🔄 Redeploying {app_name}...")
        build_id = await self.heroku.trigger_build(app_name, self.config.get("source_tarball_url"))
        succeeded = await self.wait_for_build(app_name, build_id, chat_id, message_id)
        if succeeded:
            await self._progress(chat_id, message_id, f"✅ {app_name} redeployed.")
        else:
            await self._progress(chat_id, message_id, f"❌ Redeploy of {app_name} failed.")
        return succeeded
