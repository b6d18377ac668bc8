"""
Утилиты для работы с Telegram API: экранирование Markdown и отправка/удаление
сообщений от имени любого бота партнёра.

Ошибки Telegram здесь логируются и не пробрасываются: уборка сообщений best-effort,
а переход статуса заказа к этому моменту уже закоммичен.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.exceptions import (
    TelegramAPIError,
    TelegramBadRequest,
    TelegramNetworkError,
    TelegramRetryAfter,
)

from services.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# Сетевые ошибки, при которых имеет смысл повторить запрос
RETRYABLE_EXC = (TelegramNetworkError, TelegramRetryAfter)
MAX_RETRIES = 3
RETRY_DELAY = 1.0

T = TypeVar("T")


def escape_markdown(s: str) -> str:
    """
    Экранирует спецсимволы Markdown в пользовательском тексте.
    Использовать для всех полей из БД (адреса, имена, комментарии).
    """
    if not s or not isinstance(s, str):
        return str(s) if s is not None else ""
    # Сначала \, иначе двойное экранирование сломается
    s = s.replace("\\", "\\\\")
    for ch in "_*[]()`":
        s = s.replace(ch, f"\\{ch}")
    return s


def _is_parse_error(e: TelegramBadRequest) -> bool:
    msg = str(e).lower()
    return "can't parse entities" in msg or "can't find end of the entity" in msg


class TelegramMessenger:
    """Кеш Bot по токену + безопасные send/delete/answer."""

    def __init__(self):
        self._bots: Dict[str, Bot] = {}

    def get_bot(self, token: str) -> Bot:
        bot = self._bots.get(token)
        if bot is None:
            bot = Bot(token=token, default=DefaultBotProperties(parse_mode="Markdown"))
            self._bots[token] = bot
        return bot

    async def _call(self, what: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Повторяет сетевые ошибки до MAX_RETRIES раз, остальное -> ExternalServiceError."""
        for attempt in range(MAX_RETRIES):
            try:
                return await factory()
            except RETRYABLE_EXC as e:
                wait = getattr(e, "retry_after", None)
                if wait is None:
                    wait = RETRY_DELAY
                if attempt < MAX_RETRIES - 1:
                    logger.warning("%s: %s, retry in %.1fs (attempt %s/%s)", what, e, wait, attempt + 1, MAX_RETRIES)
                    await asyncio.sleep(wait)
                else:
                    raise ExternalServiceError(f"{what}: failed after {MAX_RETRIES} attempts: {e}") from e
            except TelegramAPIError as e:
                raise ExternalServiceError(f"{what}: {e}") from e
        raise ExternalServiceError(f"{what}: no attempts made")

    async def send_message(
        self,
        token: str,
        chat_id: int,
        text: str,
        *,
        reply_markup=None,
        parse_mode: Optional[str] = "Markdown",
    ) -> Optional[int]:
        """Отправить сообщение. Возвращает message_id или None при ошибке."""
        bot = self.get_bot(token)
        try:
            try:
                message = await self._call(
                    "send_message",
                    lambda: bot.send_message(chat_id, text, reply_markup=reply_markup, parse_mode=parse_mode),
                )
            except ExternalServiceError as e:
                if not (isinstance(e.__cause__, TelegramBadRequest) and _is_parse_error(e.__cause__)):
                    raise
                logger.warning("send_message: Markdown parse error, retrying without parse_mode: %s", e)
                message = await self._call(
                    "send_message",
                    lambda: bot.send_message(chat_id, text, reply_markup=reply_markup, parse_mode=None),
                )
            return message.message_id
        except ExternalServiceError as e:
            logger.error("Failed to send message to chat %s: %s", chat_id, e)
            return None

    async def delete_message(self, token: str, chat_id: int, message_id: int) -> bool:
        """Удалить сообщение. Сообщение могло быть уже удалено, это не ошибка."""
        bot = self.get_bot(token)
        try:
            await self._call("delete_message", lambda: bot.delete_message(chat_id, message_id))
            return True
        except ExternalServiceError as e:
            logger.warning("Failed to delete message %s in chat %s: %s", message_id, chat_id, e)
            return False

    async def answer_callback(self, token: str, callback_id: str, text: str, show_alert: bool = True) -> bool:
        bot = self.get_bot(token)
        try:
            await self._call(
                "answer_callback_query",
                lambda: bot.answer_callback_query(callback_id, text=text, show_alert=show_alert),
            )
            return True
        except ExternalServiceError as e:
            # Устаревший callback (query is too old): обычное дело при повторной доставке
            logger.warning("Failed to answer callback %s: %s", callback_id, e)
            return False

    async def close(self) -> None:
        for bot in self._bots.values():
            await bot.session.close()
        self._bots.clear()
