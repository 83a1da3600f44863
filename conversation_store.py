"""
Per-user conversation state, kept in process memory only.

A restart loses in-flight conversations; users simply start again.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Any, List, Tuple

logger = logging.getLogger(__name__)

CALLBACK_SEPARATOR = ":"
MAX_CALLBACK_ARGS = 3
MAX_CALLBACK_BYTES = 64


class Step(str, Enum):
    AWAITING_KEY = "awaiting_key"
    SESSION_ID = "session_id"
    APP_NAME = "app_name"
    AWAITING_WIZARD_CHOICE = "awaiting_wizard_choice"
    BUILDING = "building"
    APP_MANAGEMENT = "app_management"
    AWAITING_VAR_VALUE = "awaiting_var_value"
    AWAITING_DELETE_CONFIRMATION = "awaiting_delete_confirmation"
    AWAITING_NEW_SESSION = "awaiting_new_session"
    AWAITING_APP_FOR_ADD = "awaiting_app_for_add"
    AWAITING_APP_FOR_REMOVAL = "awaiting_app_for_removal"


@dataclass
class _UserLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class ConversationState:
    step: Step
    data: Dict[str, Any] = field(default_factory=dict)
    anchor_message_id: Optional[int] = None

    @property
    def app_name(self) -> Optional[str]:
        return self.data.get("app_name")


class ConversationStore:
    """Process-scoped map of user id -> conversation state"""

    def __init__(self):
        self._states: Dict[int, ConversationState] = {}
        self._locks: Dict[int, _UserLock] = {}

    def __len__(self) -> int:
        return len(self._states)

    def get(self, user_id: int) -> Optional[ConversationState]:
        return self._states.get(user_id)

    def start(self, user_id: int, step: Step, anchor_message_id: Optional[int] = None,
              **data) -> ConversationState:
        state = ConversationState(step=step, data=dict(data), anchor_message_id=anchor_message_id)
        self._states[user_id] = state
        logger.debug(f"User {user_id} -> {step.value}")
        return state

    def advance(self, user_id: int, step: Step, **data) -> ConversationState:
        """Move to the next step, merging data into the existing state"""
        state = self._states.get(user_id)
        if state is None:
            return self.start(user_id, step, **data)
        logger.debug(f"User {user_id}: {state.step.value} -> {step.value}")
        state.step = step
        state.data.update(data)
        return state

    def clear(self, user_id: int) -> Optional[ConversationState]:
        return self._states.pop(user_id, None)

    def clear_all(self):
        self._states.clear()

    @asynccontextmanager
    async def lock_for(self, user_id: int):
        """
        Hold the user's lock so their events are handled one at a time.

        The lock is dropped once nobody holds or waits for it.
        """
        entry = self._locks.get(user_id)
        if entry is None:
            entry = self._locks[user_id] = _UserLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(user_id) is entry:
                del self._locks[user_id]

    def has_lock(self, user_id: int) -> bool:
        return user_id in self._locks


def make_callback_data(action: str, *args: Any) -> str:
    if len(args) > MAX_CALLBACK_ARGS:
        raise ValueError(f"Callback data takes at most {MAX_CALLBACK_ARGS} arguments")
    data = CALLBACK_SEPARATOR.join([action] + [str(arg) for arg in args])
    if len(data.encode("utf-8")) > MAX_CALLBACK_BYTES:
        raise ValueError(f"Callback data too long: {data}")
    return data


def parse_callback_data(data: str) -> Tuple[str, List[str]]:
    """Split 'action:a1:a2:a3' into the action and up to three payload fields"""
    parts = (data or "").split(CALLBACK_SEPARATOR, MAX_CALLBACK_ARGS)
    action, args = parts[0], parts[1:]
    return action, args
