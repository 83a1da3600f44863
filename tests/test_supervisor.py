"""
Tests for the dyno supervisor's output handling and alerting.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from heroku_client import HerokuClient, PlatformError
from notification_relay import Notifier
from status_lines import ConnectedEvent, LogoutEvent, parse_status_line
from supervisor import LevanterSupervisor, load_settings

NOW = datetime(2024, 5, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings(tmp_path):
    settings = load_settings({
        "APP_NAME": "mybot-01",
        "SESSION_ID": "levanter_abcdef123",
        "TELEGRAM_USER_ID": "1000",
        "TELEGRAM_CHANNEL_ID": "-100123",
        "RESTART_DELAY_MINUTES": "360",
    })
    settings["levanter_dir"] = str(tmp_path)
    return settings


@pytest.fixture
def relay_notifier():
    mock = MagicMock(spec=Notifier)
    mock.send.return_value = 77
    mock.delete.return_value = True
    return mock


@pytest.fixture
def platform():
    mock = MagicMock(spec=HerokuClient)
    mock.get_config.return_value = {}
    mock.fetch_logs.return_value = ""
    return mock


@pytest.fixture
def supervisor(settings, relay_notifier, platform):
    return LevanterSupervisor(settings, relay_notifier, platform)


def sent_to(notifier):
    return [c[0][0] for c in notifier.send.call_args_list]


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings({})

        assert settings["app_name"] == "Levanter App"
        assert settings["restart_delay_minutes"] == 360
        assert settings["levanter_dir"] == "levanter"

    def test_bad_restart_delay(self):
        assert load_settings({"RESTART_DELAY_MINUTES": "soon"})["restart_delay_minutes"] == 360


class TestHandleLine:
    """Tests for reacting to the bot's output."""

    @pytest.mark.asyncio
    async def test_connected_notice_to_user_and_channel(self, supervisor, relay_notifier):
        await supervisor.handle_line("External Plugins Installed")

        assert sent_to(relay_notifier) == ["1000", "-100123"]
        text = relay_notifier.send.call_args[0][1]
        assert parse_status_line(text) == ConnectedEvent("mybot-01")

    @pytest.mark.asyncio
    async def test_r14_goes_to_channel(self, supervisor, relay_notifier):
        await supervisor.handle_line("Error R14 (Memory quota exceeded)")

        assert sent_to(relay_notifier) == ["-100123"]
        assert "R14" in relay_notifier.send.call_args[0][1]

    @pytest.mark.asyncio
    async def test_quota_alert(self, supervisor, relay_notifier):
        await supervisor.handle_line("ERROR: you have exceeded the data transfer quota")

        assert "QUOTA" in relay_notifier.send.call_args[0][1]

    @pytest.mark.asyncio
    async def test_invalid_session_schedules_restart_once(self, supervisor, relay_notifier, platform):
        await supervisor.handle_line("INVALID SESSION ID")
        await supervisor.handle_line("INVALID SESSION ID")

        assert supervisor.restart_scheduled
        alert_task, exit_task = supervisor._tasks
        assert await alert_task is True
        assert not exit_task.done()

        texts = [c[0][1] for c in relay_notifier.send.call_args_list]
        assert len(texts) == 2
        assert parse_status_line(texts[0]) == LogoutEvent("mybot-01")
        platform.patch_config.assert_awaited_once()
        assert "LAST_LOGOUT_ALERT" in platform.patch_config.call_args[0][1]

        await supervisor.shutdown()


class TestLogoutAlert:
    """Tests for the 24 hour logout alert cooldown."""

    @pytest.mark.asyncio
    async def test_cooldown(self, supervisor, relay_notifier):
        supervisor.last_logout_alert = NOW - timedelta(hours=2)

        assert await supervisor.send_invalid_session_alert(now=NOW) is False
        relay_notifier.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_previous_alert_is_deleted(self, supervisor, relay_notifier):
        supervisor.last_logout_alert = NOW - timedelta(hours=25)
        supervisor.last_logout_message_id = 12

        assert await supervisor.send_invalid_session_alert(now=NOW) is True

        relay_notifier.delete.assert_awaited_once_with("1000", 12)
        assert supervisor.last_logout_message_id == 77
        assert supervisor.last_logout_alert == NOW

    @pytest.mark.asyncio
    async def test_failed_delivery_does_not_start_cooldown(self, supervisor, relay_notifier, platform):
        relay_notifier.send.return_value = None

        assert await supervisor.send_invalid_session_alert(now=NOW) is False
        assert supervisor.last_logout_alert is None
        platform.patch_config.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_loads_persisted_alert_time(self, supervisor, platform):
        platform.get_config.return_value = {"LAST_LOGOUT_ALERT": "2024-05-01T10:00:00.000Z"}

        await supervisor.load_last_logout_alert()

        assert supervisor.last_logout_alert == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


class TestLogMonitor:
    """Tests for the periodic platform log scan."""

    @pytest.mark.asyncio
    async def test_crash_requests_exit(self, supervisor, platform):
        platform.fetch_logs.return_value = "app[worker.1]: Process exited with status 137"

        await supervisor.check_logs_once()

        assert supervisor.exit_code == 1
        platform.fetch_logs.assert_awaited_once_with("mybot-01", 150, source="app")

    @pytest.mark.asyncio
    async def test_r14_in_logs(self, supervisor, platform, relay_notifier):
        platform.fetch_logs.return_value = "heroku[worker.1]: Error R14 (Memory quota exceeded)"

        await supervisor.check_logs_once()

        assert supervisor.exit_code is None
        assert "R14" in relay_notifier.send.call_args[0][1]

    @pytest.mark.asyncio
    async def test_platform_error_is_logged(self, supervisor, platform):
        platform.fetch_logs.side_effect = PlatformError("Unauthorized", 401)

        await supervisor.check_logs_once()

        assert supervisor.exit_code is None


class TestRestartPolicy:
    @pytest.mark.asyncio
    async def test_gives_up_after_five_quick_crashes(self, supervisor):
        results = [supervisor.should_restart(100.0 + i) for i in range(6)]

        assert results == [True] * 5 + [False]

    @pytest.mark.asyncio
    async def test_counter_resets_after_quiet_window(self, supervisor):
        for i in range(5):
            supervisor.should_restart(100.0 + i)

        assert supervisor.should_restart(200.0) is True
        assert supervisor.restart_count == 1


class TestConfigEnv:
    @pytest.mark.asyncio
    async def test_write_config_env(self, supervisor, settings, tmp_path):
        settings["status_view_emoji"] = "💚"

        path = supervisor.write_config_env()

        with open(path) as f:
            assert f.read() == "VPS=true\nSESSION_ID=levanter_abcdef123\nSTATUS_VIEW_EMOJI=💚"

    @pytest.mark.asyncio
    async def test_missing_levanter_folder(self, supervisor):
        assert await supervisor.run() == 1
