"""
Middleware для логирования входящих событий и исключений.

Цели:
- видеть каждый апдейт (кнопка/геолокация), от какого бота и партнёра он пришёл
- получать полный traceback и контекст, если упало в любом месте обработчика
"""

import logging
import time
from typing import Callable, Dict, Any, Awaitable, Optional

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Message, CallbackQuery

from services.errors import PreconditionFailed


logger = logging.getLogger(__name__)


def _truncate(text: Optional[str], limit: int = 200) -> Optional[str]:
    if text is None:
        return None
    text = text.replace("\n", "\\n")
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _payload(event: Message) -> Optional[str]:
    if event.location is not None:
        return f"location={event.location.latitude},{event.location.longitude}"
    return _truncate(event.text or event.caption)


class LoggingMiddleware(BaseMiddleware):
    """Логирует старт/финиш обработки события + исключения с контекстом."""

    def __init__(self, log_success: bool = True):
        self.log_success = log_success

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        started = time.monotonic()

        event_type = type(event).__name__
        user_id = None
        chat_id = None
        payload = None

        if isinstance(event, Message):
            user_id = event.from_user.id if event.from_user else None
            chat_id = event.chat.id if event.chat else None
            payload = _payload(event)
        elif isinstance(event, CallbackQuery):
            user_id = event.from_user.id if event.from_user else None
            chat_id = event.message.chat.id if event.message and event.message.chat else None
            payload = _truncate(event.data)

        tenant_id = data.get("tenant_id")
        identity = data.get("identity")
        bot_kind = identity.kind if identity is not None else None

        # Корреляционный ID на время обработки одного события
        trace_id = f"{int(time.time() * 1000)}:{user_id or 'na'}"
        data["trace_id"] = trace_id

        logger.info(
            "IN  trace=%s tenant=%s bot=%s type=%s user=%s chat=%s payload=%s",
            trace_id,
            tenant_id,
            bot_kind,
            event_type,
            user_id,
            chat_id,
            payload,
        )

        try:
            result = await handler(event, data)
            ms = (time.monotonic() - started) * 1000
            if self.log_success:
                logger.info(
                    "OUT trace=%s tenant=%s bot=%s type=%s user=%s chat=%s time_ms=%.1f",
                    trace_id,
                    tenant_id,
                    bot_kind,
                    event_type,
                    user_id,
                    chat_id,
                    ms,
                )
            return result
        except PreconditionFailed as e:
            # Повторная доставка или кнопка не из того статуса: не ошибка
            logger.info(
                "REJ trace=%s tenant=%s type=%s user=%s reason=%s",
                trace_id,
                tenant_id,
                event_type,
                user_id,
                e.details,
            )
            raise
        except Exception as e:
            ms = (time.monotonic() - started) * 1000
            logger.error(
                "ERR trace=%s tenant=%s bot=%s type=%s user=%s chat=%s time_ms=%.1f err=%s",
                trace_id,
                tenant_id,
                bot_kind,
                event_type,
                user_id,
                chat_id,
                ms,
                repr(e),
                exc_info=True,
            )
            raise
