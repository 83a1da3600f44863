import re
from typing import List, Tuple, Optional
from config_manager import Config

APP_NAME_PATTERN = re.compile(r'^[a-z0-9-]+$')
VAR_NAME_PATTERN = re.compile(r'^[A-Z][A-Z0-9_]*$')
MIN_APP_NAME_LENGTH = 5
MAX_APP_NAME_LENGTH = 30
MIN_SESSION_ID_LENGTH = 10

# Config vars a user may never overwrite from the chat
PROTECTED_VARS = {"HEROKU_API_KEY", "APP_NAME", "DATABASE_URL", "LAST_LOGOUT_ALERT"}


class SecurityManager:
    """Validate user input before it reaches the platform"""

    def __init__(self, config: Config):
        self.config = config

    def validate_app_name(self, name: str) -> Tuple[bool, List[str]]:
        """Check an application name against the platform's naming rules"""
        violations = []
        name = name or ""

        if len(name) < MIN_APP_NAME_LENGTH:
            violations.append(f"Name must be at least {MIN_APP_NAME_LENGTH} characters long")
        if len(name) > MAX_APP_NAME_LENGTH:
            violations.append(f"Name must be at most {MAX_APP_NAME_LENGTH} characters long")
        if not APP_NAME_PATTERN.match(name):
            violations.append("Use only lowercase letters, digits and dashes")

        return len(violations) == 0, violations

    def validate_session_id(self, session_id: str) -> Tuple[bool, List[str]]:
        violations = []
        session_id = (session_id or "").strip()

        if len(session_id) < MIN_SESSION_ID_LENGTH:
            violations.append(f"Session ID must be at least {MIN_SESSION_ID_LENGTH} characters long")
        if any(ch.isspace() for ch in session_id):
            violations.append("Session ID must not contain spaces")

        return len(violations) == 0, violations

    def validate_var(self, name: str, value: Optional[str]) -> Tuple[bool, List[str]]:
        """Check a config var edit requested from the management menu"""
        violations = []
        name = (name or "").upper()

        if not VAR_NAME_PATTERN.match(name):
            violations.append(f"Invalid variable name: {name}")
        elif name in PROTECTED_VARS:
            violations.append(f"{name} cannot be changed from the bot")
        elif name not in self.config.editable_vars():
            violations.append(f"{name} is not an editable variable")

        if value is not None and len(value) > 500:
            violations.append("Value is too long (max 500 characters)")

        if name in self.config.get("boolean_vars", []) and value not in (None, "true", "false"):
            violations.append(f"{name} only accepts true or false")

        return len(violations) == 0, violations

    def is_admin(self, user_id: int) -> bool:
        return self.config.is_admin(user_id)
