"""
Status lines relayed by the supervisor into the broadcast channel.

The supervised WhatsApp bot has no structured status API; the
supervisor posts plain text and the deploy bot pattern-matches it.
Formatting and parsing of those lines both live here.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

LOGOUT_PATTERN = re.compile(r"user\s+\[([^\]]+)\]\s+has\s+logged\s+out", re.IGNORECASE | re.DOTALL)
CONNECTED_PATTERN = re.compile(r"^\W*\[([^\]]+)\]\s+connected", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class LogoutEvent:
    app_name: str


@dataclass(frozen=True)
class ConnectedEvent:
    app_name: str


@dataclass(frozen=True)
class UnrecognizedEvent:
    text: str


StatusEvent = Union[LogoutEvent, ConnectedEvent, UnrecognizedEvent]


def parse_status_line(text: Optional[str]) -> StatusEvent:
    """Classify a channel post as a logout notice, a connected notice, or neither"""
    if not text:
        return UnrecognizedEvent(text or "")

    match = LOGOUT_PATTERN.search(text)
    if match:
        return LogoutEvent(match.group(1).strip())

    match = CONNECTED_PATTERN.search(text.strip())
    if match:
        return ConnectedEvent(match.group(1).strip())

    return UnrecognizedEvent(text)


def greeting_for(hour: int) -> str:
    if hour < 12:
        return "good morning"
    if hour < 17:
        return "good afternoon"
    return "good evening"


def format_restart_delay(minutes: int) -> str:
    if minutes >= 60 and minutes % 60 == 0:
        return f"{minutes // 60} hour(s)"
    return f"{minutes} minute(s)"


def format_connected_notice(app_name: str, session_id: str, when: datetime) -> str:
    return (
        f"✅ [{app_name}] connected.\n"
        f"🔐 {session_id}\n"
        f"🕒 {when.strftime('%d/%m/%Y, %H:%M:%S')}"
    )


def format_logout_notice(app_name: str, session_id: str, when: datetime,
                         restart_delay_minutes: int, owner_label: str = "there") -> str:
    return (
        f"Hey {owner_label}, {greeting_for(when.hour)}!\n\n"
        f"User [{app_name}] has logged out.\n"
        f"[{session_id}] invalid\n"
        f"Time: {when.strftime('%d/%m/%Y, %H:%M:%S')}\n"
        f"Restarting in {format_restart_delay(restart_delay_minutes)}."
    )
