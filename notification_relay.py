"""
Outbound side of the Telegram relay: send, edit and delete messages for
users, the operator and the broadcast channel.

Failures are logged and reported through the return value; a broken
notification never aborts the operation that triggered it.
"""

import asyncio
import logging
from typing import Optional, Union, List

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest, TelegramError

logger = logging.getLogger(__name__)

ChatId = Union[int, str]
Buttons = Optional[List[List[InlineKeyboardButton]]]

ANIMATION_FRAMES = ["⏳", "⌛"]


def as_markup(buttons: Buttons) -> Optional[InlineKeyboardMarkup]:
    return InlineKeyboardMarkup(buttons) if buttons else None


class Notifier:
    def __init__(self, bot: Bot, admin_id: Optional[int] = None, channel_id: Optional[int] = None):
        self.bot = bot
        self.admin_id = admin_id
        self.channel_id = channel_id

    async def send(self, chat_id: ChatId, text: str, buttons: Buttons = None,
                   parse_mode: Optional[str] = None) -> Optional[int]:
        """Send a message; returns its id, or None if delivery failed"""
        try:
            message = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                reply_markup=as_markup(buttons),
                parse_mode=parse_mode,
            )
            return message.message_id
        except TelegramError as e:
            logger.error(f"Telegram send to {chat_id} failed: {e}")
            return None

    async def edit(self, chat_id: ChatId, message_id: int, text: str, buttons: Buttons = None,
                   parse_mode: Optional[str] = None) -> bool:
        try:
            await self.bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=as_markup(buttons),
                parse_mode=parse_mode,
            )
            return True
        except BadRequest as e:
            # Editing to identical text is not an error worth reporting
            if "not modified" in str(e).lower():
                return True
            logger.warning(f"Telegram edit of {chat_id}/{message_id} failed: {e}")
            return False
        except TelegramError as e:
            logger.warning(f"Telegram edit of {chat_id}/{message_id} failed: {e}")
            return False

    async def delete(self, chat_id: ChatId, message_id: int) -> bool:
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
            return True
        except TelegramError as e:
            logger.warning(f"Telegram delete of {chat_id}/{message_id} failed: {e}")
            return False

    async def send_or_edit(self, chat_id: ChatId, message_id: Optional[int], text: str,
                           buttons: Buttons = None) -> Optional[int]:
        """Edit the anchor message when there is one, otherwise send a new message"""
        if message_id is not None and await self.edit(chat_id, message_id, text, buttons):
            return message_id
        return await self.send(chat_id, text, buttons)

    async def notify_admin(self, text: str) -> Optional[int]:
        if not self.admin_id:
            logger.info(f"No operator configured, dropping notice: {text}")
            return None
        return await self.send(self.admin_id, text)

    async def animate(self, chat_id: ChatId, message_id: int, text: str, interval: float = 2.0):
        """Keep editing a placeholder message until cancelled"""
        frame = 0
        while True:
            await asyncio.sleep(interval)
            frame += 1
            dots = "." * (frame % 4)
            await self.edit(chat_id, message_id, f"{text} {ANIMATION_FRAMES[frame % 2]}{dots}")

    def start_animation(self, chat_id: ChatId, message_id: Optional[int], text: str,
                        interval: float = 2.0) -> Optional[asyncio.Task]:
        if message_id is None:
            return None
        return asyncio.create_task(self.animate(chat_id, message_id, text, interval))
