import os
import json
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

# Environment variable -> (config key, type)
ENV_OVERRIDES = {
    "TELEGRAM_BOT_TOKEN": ("bot_token", str),
    "HEROKU_API_KEY": ("heroku_api_key", str),
    "RELAY_BOT_TOKEN": ("relay_bot_token", str),
    "ADMIN_ID": ("admin_id", int),
    "CHANNEL_ID": ("channel_id", int),
    "DATABASE_PATH": ("database_path", str),
    "SOURCE_TARBALL_URL": ("source_tarball_url", str),
    "HEALTH_PORT": ("health_port", int),
}


class Config:
    """Configuration manager for the deploy bot"""

    def __init__(self, config_file: str = "config.json", environ: Optional[Dict[str, str]] = None):
        self.config_file = config_file
        self.environ = os.environ if environ is None else environ
        self.config = self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from defaults, config file, then environment variables"""
        config = {
            "bot_token": "",
            "heroku_api_key": "",
            "relay_bot_token": "",
            "admin_id": 0,
            "channel_id": 0,
            "database_path": "deploy_bot.db",
            "source_tarball_url": "https://github.com/lyfe00011/levanter/tarball/master",
            "health_port": 8080,
            "build_poll_interval": 5,
            "build_poll_attempts": 20,
            "deploy_wait_timeout": 120,
            "update_wait_timeout": 180,
            "animation_interval": 2,
            "free_trial_cooldown_days": 14,
            "free_trial_minutes": 60,
            "free_trial_warning_minutes": 55,
            "reminder_interval": 3600,
            "logout_reminder_hours": 24,
            "log_lines": 100,
            "addons": ["heroku-postgresql:essential-0"],
            "buildpacks": [
                "https://github.com/heroku/heroku-buildpack-apt",
                "https://github.com/jonathanong/heroku-buildpack-ffmpeg-latest",
                "heroku/nodejs",
            ],
            "default_vars": {
                "AUTO_STATUS_VIEW": "no-dl",
                "ALWAYS_ONLINE": "false",
                "PREFIX": ".",
                "STATUS_VIEW_EMOJI": "",
                "RESTART_DELAY_MINUTES": "360",
            },
            "boolean_vars": ["ALWAYS_ONLINE", "ANTI_DELETE", "AUTO_READ", "REJECT_CALL"],
            "text_vars": ["PREFIX", "SUDO", "STATUS_VIEW_EMOJI", "AUTO_STATUS_VIEW", "BOT_NAME"],
        }

        # Try to load from config file
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, 'r') as f:
                    file_config = json.load(f)
                    config.update(file_config)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not load config file {self.config_file}: {e}")

        for env_name, (key, cast) in ENV_OVERRIDES.items():
            raw = self.environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                config[key] = cast(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {env_name}: {raw!r}")

        return config

    def save_config(self):
        """Save current configuration to file"""
        try:
            with open(self.config_file, 'w') as f:
                json.dump(self.config, f, indent=2)
        except OSError as e:
            logger.error(f"Error saving config: {e}")

    def get(self, key: str, default=None):
        """Get configuration value"""
        return self.config.get(key, default)

    def set(self, key: str, value: Any):
        """Set configuration value"""
        self.config[key] = value
        self.save_config()

    @property
    def bot_token(self) -> str:
        return self.config["bot_token"]

    @property
    def admin_id(self) -> int:
        return self.config["admin_id"]

    @property
    def channel_id(self) -> int:
        return self.config["channel_id"]

    def is_admin(self, user_id: int) -> bool:
        """Check if user is the bot operator"""
        return bool(self.admin_id) and user_id == self.admin_id

    def is_boolean_var(self, name: str) -> bool:
        return name.upper() in self.config.get("boolean_vars", [])

    def editable_vars(self):
        """Variables a user may edit from the management menu"""
        return list(self.config.get("boolean_vars", [])) + list(self.config.get("text_vars", []))
