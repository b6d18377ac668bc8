"""
Обработка ошибок хендлеров: короткий alert курьеру + GatewayReply для webhook.
Сбои записи, конфигурации и неожиданные исключения дополнительно пишутся в аудит.
"""
import logging
from typing import Any, Optional

from aiogram import Bot, Router
from aiogram.filters import ExceptionTypeFilter
from aiogram.types import ErrorEvent
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from handlers.actions import GatewayReply
from services import audit
from services.errors import DeliveryError, PreconditionFailed, PersistenceError, ConfigurationError
from services.telegram_utils import TelegramMessenger

logger = logging.getLogger(__name__)

router = Router()

INTERNAL_ERROR_ALERT = "⚠️ Ошибка. Попробуйте ещё раз."


async def _notify(event: ErrorEvent, bot: Bot, messenger: TelegramMessenger, text: str) -> None:
    """Сообщить курьеру: ответ на callback или сообщение в чат."""
    update = event.update
    if update.callback_query is not None:
        await messenger.answer_callback(bot.token, update.callback_query.id, text)
    elif update.message is not None:
        await messenger.send_message(bot.token, update.message.chat.id, text, parse_mode=None)


@router.errors(ExceptionTypeFilter(DeliveryError))
async def delivery_error_handler(
    event: ErrorEvent,
    bot: Bot,
    messenger: TelegramMessenger,
    session_maker: async_sessionmaker[AsyncSession],
    tenant_id: Optional[int] = None,
    **kwargs: Any,
) -> GatewayReply:
    exc: DeliveryError = event.exception

    if isinstance(exc, PreconditionFailed):
        logger.info("Rejected: order=%s, courier=%s, reason=%s", exc.order_id, exc.courier_id, exc.details)
    elif isinstance(exc, (PersistenceError, ConfigurationError)):
        logger.error("%s: order=%s, courier=%s, details=%s", type(exc).__name__, exc.order_id, exc.courier_id, exc.details)
        await audit.record_failure(
            session_maker,
            tenant_id,
            f"Ошибка обработки заказа #{exc.order_id}" if exc.order_id else "Ошибка обработки события курьера",
            {"order_id": exc.order_id, "courier_id": exc.courier_id, "error": type(exc).__name__, "details": exc.details},
        )
    else:
        logger.warning("%s: order=%s, courier=%s, details=%s", type(exc).__name__, exc.order_id, exc.courier_id, exc.details)

    await _notify(event, bot, messenger, exc.alert)
    return GatewayReply(exc.status, exc.to_body())


@router.errors()
async def unexpected_error_handler(
    event: ErrorEvent,
    bot: Bot,
    messenger: TelegramMessenger,
    session_maker: async_sessionmaker[AsyncSession],
    tenant_id: Optional[int] = None,
    **kwargs: Any,
) -> GatewayReply:
    exc = event.exception
    trace = f"update_id={getattr(event.update, 'update_id', None)}"
    logger.error(
        "UNHANDLED %s err=%s",
        trace,
        repr(exc),
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    await audit.record_failure(
        session_maker,
        tenant_id,
        "Внутренняя ошибка обработки события курьера",
        {"update_id": getattr(event.update, "update_id", None), "error": repr(exc)},
    )
    await _notify(event, bot, messenger, INTERNAL_ERROR_ALERT)
    return GatewayReply.error(500, "Internal server error", str(exc))
