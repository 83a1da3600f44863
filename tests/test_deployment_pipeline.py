"""
Tests for DeploymentPipeline: build polling, ownership persistence and
the wait for the bot's first connection.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app_manager import AppManager
from channel_relay import ChannelRelay
from deployment_pipeline import (
    BUILD_FAILED,
    CREATE_FAILED,
    INVALID,
    LOGGED_OUT,
    NOT_FOUND,
    ONLINE,
    TIMEOUT,
    DeploymentPipeline,
)
from heroku_client import AppNotFoundError, NameCollisionError, PlatformError
from reminder_scheduler import TrialScheduler

SESSION_ID = "levanter_abcdef123"


@pytest.fixture
def trial_scheduler():
    return MagicMock()


@pytest.fixture
def app_manager():
    manager = MagicMock()
    manager.handle_not_found = AsyncMock(return_value=[42])
    manager.delete = AsyncMock()
    manager.force_delete = AsyncMock()
    return manager


@pytest.fixture
def pipeline(config, db, heroku, notifier, rendezvous, security, app_manager, trial_scheduler):
    return DeploymentPipeline(config, db, heroku, notifier, rendezvous, security,
                              app_manager=app_manager, trial_scheduler=trial_scheduler)


@pytest.fixture
def relay(db, rendezvous, notifier, config):
    return ChannelRelay(db, rendezvous, notifier, config)


async def wait_until_pending(rendezvous, app_name):
    for _ in range(200):
        if rendezvous.has_pending(app_name):
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"no pending wait for {app_name}")


class TestDeploy:
    """Tests for DeploymentPipeline.deploy."""

    @pytest.mark.asyncio
    async def test_success_after_three_polls(self, pipeline, relay, heroku, db, rendezvous):
        """Build succeeds on the third poll, the bot connects, the app is owned."""
        heroku.poll_build.side_effect = ["pending", "pending", "succeeded"]

        task = asyncio.create_task(pipeline.deploy(42, 42, "mybot-01", SESSION_ID))
        await wait_until_pending(rendezvous, "mybot-01")
        assert db.get_ownership(42, "mybot-01") is not None

        await relay.handle_text("✅ [mybot-01] connected.")
        outcome = await task

        assert outcome.status == ONLINE
        assert outcome.ok
        assert heroku.poll_build.await_count == 3
        assert db.list_apps(42) == ["mybot-01"]
        assert len(rendezvous) == 0

        config_vars = heroku.patch_config.call_args[0][1]
        assert config_vars["SESSION_ID"] == SESSION_ID
        assert config_vars["APP_NAME"] == "mybot-01"
        assert config_vars["TELEGRAM_BOT_TOKEN"] == "relay-token"

    @pytest.mark.asyncio
    async def test_timeout_keeps_ownership(self, pipeline, heroku, db, rendezvous, notifier):
        """No status line arrives: recoverable failure, app stays owned."""
        outcome = await pipeline.deploy(42, 42, "mybot-01", SESSION_ID)

        assert outcome.status == TIMEOUT
        assert db.list_apps(42) == ["mybot-01"]
        assert len(rendezvous) == 0
        heroku.delete_app.assert_not_awaited()

        buttons = notifier.send_or_edit.call_args[0][3]
        assert buttons[0][0].callback_data == "update_session:mybot-01"

    @pytest.mark.asyncio
    async def test_logged_out_during_wait(self, pipeline, relay, db, rendezvous):
        db.upsert_ownership(42, "mybot-01", SESSION_ID)
        task = asyncio.create_task(pipeline.deploy(42, 42, "mybot-01", SESSION_ID))
        await wait_until_pending(rendezvous, "mybot-01")

        await relay.handle_text("User [mybot-01] has logged out.")
        outcome = await task

        assert outcome.status == LOGGED_OUT
        assert db.list_apps(42) == ["mybot-01"]

    @pytest.mark.asyncio
    async def test_build_failure_leaves_no_ownership(self, pipeline, heroku, db, rendezvous):
        heroku.poll_build.side_effect = ["pending", "failed"]

        outcome = await pipeline.deploy(42, 42, "mybot-01", SESSION_ID)

        assert outcome.status == BUILD_FAILED
        assert db.list_apps(42) == []
        assert len(rendezvous) == 0
        heroku.delete_app.assert_awaited_once_with("mybot-01")

    @pytest.mark.asyncio
    async def test_poll_error_is_not_retried(self, pipeline, heroku):
        heroku.poll_build.side_effect = PlatformError("rate limited", 429)

        outcome = await pipeline.deploy(42, 42, "mybot-01", SESSION_ID)

        assert outcome.status == BUILD_FAILED
        assert heroku.poll_build.await_count == 1

    @pytest.mark.asyncio
    async def test_build_still_pending_after_all_polls(self, pipeline, heroku, config):
        heroku.poll_build.return_value = "pending"

        outcome = await pipeline.deploy(42, 42, "mybot-01", SESSION_ID)

        assert outcome.status == BUILD_FAILED
        assert heroku.poll_build.await_count == config.get("build_poll_attempts")

    @pytest.mark.asyncio
    async def test_name_taken(self, pipeline, heroku, db):
        heroku.create_app.side_effect = NameCollisionError("Name is already taken", 422)

        outcome = await pipeline.deploy(42, 42, "mybot-01", SESSION_ID)

        assert outcome.status == CREATE_FAILED
        assert "taken" in outcome.message
        heroku.trigger_build.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_name_never_reaches_platform(self, pipeline, heroku):
        outcome = await pipeline.deploy(42, 42, "My_Bot", SESSION_ID)

        assert outcome.status == INVALID
        heroku.create_app.assert_not_awaited()


class TestFreeTrial:
    """Tests for free-trial deployments."""

    @pytest.mark.asyncio
    async def test_cooldown_blocks_second_trial(self, pipeline, heroku, db):
        db.record_free_trial(42)

        outcome = await pipeline.deploy(42, 42, "mybot-01", SESSION_ID, free_trial=True)

        assert outcome.status == INVALID
        heroku.create_app.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trial_is_recorded_and_scheduled(self, pipeline, relay, db, rendezvous, trial_scheduler):
        task = asyncio.create_task(pipeline.deploy(42, 42, "mybot-01", SESSION_ID, free_trial=True))
        await wait_until_pending(rendezvous, "mybot-01")
        await relay.handle_text("[mybot-01] connected")
        outcome = await task

        assert outcome.ok
        assert db.can_deploy_free_trial(42)[0] is False
        trial_scheduler.schedule.assert_called_once()
        assert trial_scheduler.schedule.call_args[0][:2] == (42, "mybot-01")

    @pytest.mark.asyncio
    async def test_failed_build_does_not_use_up_the_trial(self, pipeline, heroku, db):
        heroku.poll_build.return_value = "failed"

        outcome = await pipeline.deploy(42, 42, "mybot-01", SESSION_ID, free_trial=True)

        assert outcome.status == BUILD_FAILED
        assert db.can_deploy_free_trial(42) == (True, None)
        assert db.is_free_trial_app("mybot-01") is False

    @pytest.mark.asyncio
    async def test_trial_clock_starts_when_session_update_connects(
            self, pipeline, relay, db, rendezvous, trial_scheduler):
        """A trial that timed out on deploy is still torn down once it comes online."""
        outcome = await pipeline.deploy(42, 42, "mybot-01", SESSION_ID, free_trial=True)
        assert outcome.status == TIMEOUT
        trial_scheduler.schedule.assert_not_called()
        assert db.is_free_trial_app("mybot-01") is True

        task = asyncio.create_task(pipeline.update_session(42, 42, "mybot-01", SESSION_ID))
        await wait_until_pending(rendezvous, "mybot-01")
        await relay.handle_text("[mybot-01] connected")
        outcome = await task

        assert outcome.status == ONLINE
        trial_scheduler.schedule.assert_called_once()
        assert trial_scheduler.schedule.call_args[0][:2] == (42, "mybot-01")

    @pytest.mark.asyncio
    async def test_session_update_of_paid_app_starts_no_clock(
            self, pipeline, relay, db, rendezvous, trial_scheduler):
        db.upsert_ownership(42, "mybot-01", "old-session-id")
        task = asyncio.create_task(pipeline.update_session(42, 42, "mybot-01", SESSION_ID))
        await wait_until_pending(rendezvous, "mybot-01")
        await relay.handle_text("[mybot-01] connected")

        assert (await task).ok
        trial_scheduler.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_expiry_of_app_already_gone_drops_records(
            self, config, db, heroku, notifier, rendezvous, security, relay):
        manager = AppManager(config, db, heroku, notifier)
        trials = TrialScheduler(notifier, warning_minutes=0, lifetime_minutes=0)
        manager.trial_scheduler = trials
        pipeline = DeploymentPipeline(config, db, heroku, notifier, rendezvous, security,
                                      app_manager=manager, trial_scheduler=trials)
        heroku.delete_app.side_effect = AppNotFoundError("Couldn't find that app.", 404)

        task = asyncio.create_task(pipeline.deploy(42, 42, "trial-app", SESSION_ID, free_trial=True))
        await wait_until_pending(rendezvous, "trial-app")
        await relay.handle_text("[trial-app] connected")
        assert (await task).ok

        for _ in range(200):
            if "trial-app" not in trials:
                break
            await asyncio.sleep(0.005)

        assert "trial-app" not in trials
        heroku.delete_app.assert_awaited_once_with("trial-app")
        assert db.find_owner("trial-app") is None
        assert db.is_free_trial_app("trial-app") is False


class TestConfigVars:
    def test_user_choices_win_over_defaults(self, pipeline):
        config_vars = pipeline.build_config_vars("mybot-01", SESSION_ID, {"AUTO_STATUS_VIEW": "true"})

        assert config_vars["AUTO_STATUS_VIEW"] == "true"
        assert config_vars["PREFIX"] == "."

    def test_protected_vars_cannot_be_overridden(self, pipeline):
        config_vars = pipeline.build_config_vars("mybot-01", SESSION_ID, {"APP_NAME": "other-app"})

        assert config_vars["APP_NAME"] == "mybot-01"


class TestUpdateSession:
    """Tests for DeploymentPipeline.update_session."""

    @pytest.mark.asyncio
    async def test_reconnects(self, pipeline, relay, heroku, db, rendezvous):
        db.upsert_ownership(42, "mybot-01", "old-session-id")
        task = asyncio.create_task(pipeline.update_session(42, 42, "mybot-01", SESSION_ID))
        await wait_until_pending(rendezvous, "mybot-01")

        await relay.handle_text("[mybot-01] connected")
        outcome = await task

        assert outcome.status == ONLINE
        heroku.patch_config.assert_awaited_once_with(
            "mybot-01", {"SESSION_ID": SESSION_ID, "LAST_LOGOUT_ALERT": None}
        )
        heroku.restart_dynos.assert_awaited_once_with("mybot-01")
        assert db.get_ownership(42, "mybot-01")["session_id"] == SESSION_ID

    @pytest.mark.asyncio
    async def test_missing_app_goes_through_not_found_cleanup(self, pipeline, heroku, app_manager):
        heroku.patch_config.side_effect = AppNotFoundError("Couldn't find that app.", 404)

        outcome = await pipeline.update_session(42, 42, "mybot-01", SESSION_ID)

        assert outcome.status == NOT_FOUND
        app_manager.handle_not_found.assert_awaited_once_with("mybot-01", 42)


class TestRedeploy:
    @pytest.mark.asyncio
    async def test_redeploy_polls_build(self, pipeline, heroku):
        heroku.poll_build.side_effect = ["pending", "succeeded"]

        assert await pipeline.redeploy(42, "mybot-01") is True
        heroku.trigger_build.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redeploy_propagates_not_found(self, pipeline, heroku):
        heroku.trigger_build.side_effect = AppNotFoundError("Couldn't find that app.", 404)

        with pytest.raises(AppNotFoundError):
            await pipeline.redeploy(42, "mybot-01")
