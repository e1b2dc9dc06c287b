"""Telegram Bot API client for the approval bot.

Wraps ``telegram.Bot`` so every call answers with an ``ApiResult`` like the
HTTP service clients: the engine decides per call whether a failure matters
(a failed delivery to one admin must not stop delivery to the others).

Usage:
    async with ChatClient(token) as chat:
        result = await chat.send_message(admin_id, "<b>hello</b>")
"""

from typing import Any

import structlog
from telegram import Bot, InlineKeyboardMarkup, Message
from telegram.constants import ParseMode
from telegram.error import BadRequest, Forbidden, InvalidToken, RetryAfter, TelegramError

from src.clients.base import ApiResult

logger = structlog.get_logger(__name__)

# Inline keyboard with no buttons; attaching it removes the buttons of an edited message
EMPTY_KEYBOARD = InlineKeyboardMarkup([])


def _status_for(error: TelegramError) -> int:
    if isinstance(error, InvalidToken):
        return 401
    if isinstance(error, Forbidden):
        return 403
    if isinstance(error, RetryAfter):
        return 429
    if isinstance(error, BadRequest):
        return 400
    return 0


class ChatClient:
    """Soft-failing facade over ``telegram.Bot``."""

    def __init__(self, token: str, bot: Bot | None = None):
        """Initialize the client.

        Args:
            token: Bot token from the settings document.
            bot: Pre-built bot instance (tests pass a mock).
        """
        self.token = token
        self._bot = bot if bot is not None else Bot(token)
        self._owns_bot = bot is None

    @property
    def bot(self) -> Bot:
        return self._bot

    async def __aenter__(self) -> "ChatClient":
        if self._owns_bot:
            await self._bot.initialize()
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        if self._owns_bot:
            await self._bot.shutdown()

    async def _call(self, operation: str, coro: Any) -> ApiResult:
        try:
            body = await coro
        except BadRequest as e:
            # Editing a message to its current content is not an error for us
            if "not modified" in str(e).lower():
                return ApiResult(ok=True, status=200, text=e.message)
            logger.warning("telegram_call_failed", operation=operation, error=e.message)
            return ApiResult.failure(e.message, status=400)
        except TelegramError as e:
            logger.warning("telegram_call_failed", operation=operation, error=e.message)
            return ApiResult.failure(e.message, status=_status_for(e))
        return ApiResult(ok=True, status=200, body=body)

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> ApiResult:
        return await self._call(
            "send_message",
            self._bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.HTML,
                reply_markup=reply_markup,
                disable_web_page_preview=True,
            ),
        )

    async def send_photo(
        self,
        chat_id: int | str,
        photo: bytes | str,
        caption: str,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> ApiResult:
        """Send a photo given as raw bytes or an absolute URL."""
        return await self._call(
            "send_photo",
            self._bot.send_photo(
                chat_id=chat_id,
                photo=photo,
                caption=caption,
                parse_mode=ParseMode.HTML,
                reply_markup=reply_markup,
            ),
        )

    async def send_document(
        self,
        chat_id: int | str,
        document: bytes,
        filename: str,
        caption: str,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> ApiResult:
        return await self._call(
            "send_document",
            self._bot.send_document(
                chat_id=chat_id,
                document=document,
                filename=filename,
                caption=caption,
                parse_mode=ParseMode.HTML,
                reply_markup=reply_markup,
            ),
        )

    async def edit_message(
        self,
        chat_id: int | str,
        message_id: int,
        text: str,
        has_photo: bool = False,
        reply_markup: InlineKeyboardMarkup | None = None,
    ) -> ApiResult:
        """Replace a delivered notification in place.

        Photo and document messages carry a caption instead of text. Without
        ``reply_markup`` the inline keyboard is removed.
        """
        markup = reply_markup if reply_markup is not None else EMPTY_KEYBOARD
        if has_photo:
            return await self._call(
                "edit_message_caption",
                self._bot.edit_message_caption(
                    chat_id=chat_id,
                    message_id=message_id,
                    caption=text,
                    parse_mode=ParseMode.HTML,
                    reply_markup=markup,
                ),
            )
        return await self._call(
            "edit_message_text",
            self._bot.edit_message_text(
                chat_id=chat_id,
                message_id=message_id,
                text=text,
                parse_mode=ParseMode.HTML,
                reply_markup=markup,
            ),
        )

    async def answer_callback(
        self, callback_query_id: str, text: str, show_alert: bool = False
    ) -> ApiResult:
        return await self._call(
            "answer_callback_query",
            self._bot.answer_callback_query(
                callback_query_id=callback_query_id,
                text=text,
                show_alert=show_alert,
            ),
        )

    async def get_updates(self, offset: int, timeout: int) -> ApiResult:
        """Long-poll for updates after ``offset``; the body is a tuple of ``Update``."""
        return await self._call(
            "get_updates",
            self._bot.get_updates(
                offset=offset,
                timeout=timeout,
                allowed_updates=["message", "callback_query"],
            ),
        )

    async def delete_webhook(self) -> ApiResult:
        return await self._call("delete_webhook", self._bot.delete_webhook())


def has_photo(message: Message | None) -> bool:
    """Whether a delivered message is edited through its caption."""
    if message is None:
        return False
    return bool(message.photo or message.document)
