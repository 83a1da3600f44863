"""
Shared fixtures: a throwaway sqlite database, a fast config, and mocked
Telegram and Heroku collaborators.
"""

from unittest.mock import MagicMock

import pytest

from config_manager import Config
from database_manager import DatabaseManager
from heroku_client import HerokuClient
from notification_relay import Notifier
from rendezvous import RendezvousRegistry
from security_manager import SecurityManager

ADMIN_ID = 1000
CHANNEL_ID = -100123


@pytest.fixture
def config(tmp_path):
    """Config with zero poll intervals and short waits."""
    cfg = Config(
        config_file=str(tmp_path / "config.json"),
        environ={
            "ADMIN_ID": str(ADMIN_ID),
            "CHANNEL_ID": str(CHANNEL_ID),
            "HEROKU_API_KEY": "heroku-test-key",
            "RELAY_BOT_TOKEN": "relay-token",
            "DATABASE_PATH": str(tmp_path / "deploy_bot.db"),
        },
    )
    cfg.config.update({
        "build_poll_interval": 0,
        "build_poll_attempts": 5,
        "deploy_wait_timeout": 0.2,
        "update_wait_timeout": 0.2,
        "animation_interval": 0.01,
    })
    return cfg


@pytest.fixture
def db(config):
    return DatabaseManager(config.get("database_path"))


@pytest.fixture
def notifier():
    """Notifier whose Telegram calls always succeed."""
    mock = MagicMock(spec=Notifier)
    mock.send.return_value = 500
    mock.edit.return_value = True
    mock.delete.return_value = True
    mock.send_or_edit.return_value = 500
    mock.notify_admin.return_value = 501
    mock.start_animation.return_value = None
    return mock


@pytest.fixture
def heroku():
    mock = MagicMock(spec=HerokuClient)
    mock.create_app.return_value = {"name": "created"}
    mock.get_app.return_value = {"name": "app", "web_url": "https://app.herokuapp.com/"}
    mock.get_config.return_value = {}
    mock.patch_config.return_value = {}
    mock.trigger_build.return_value = "build-1"
    mock.poll_build.return_value = "succeeded"
    mock.list_dynos.return_value = []
    mock.fetch_logs.return_value = ""
    return mock


@pytest.fixture
def rendezvous():
    return RendezvousRegistry()


@pytest.fixture
def security(config):
    return SecurityManager(config)
