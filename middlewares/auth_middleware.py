"""
Определение курьера по Telegram user id внутри партнёра.
"""
import logging
from typing import Callable, Dict, Any, Awaitable
from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Message, CallbackQuery
from sqlalchemy.ext.asyncio import AsyncSession
from services.db_ops import get_courier_by_telegram_id

logger = logging.getLogger(__name__)


class CourierMiddleware(BaseMiddleware):
    """
    Кладёт в data['courier'] курьера партнёра (tenant_id из webhook) или None.
    Решение, что делать с незнакомым пользователем, принимает хендлер.
    Должна стоять после DatabaseMiddleware.
    """

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        user_id = None
        if isinstance(event, (Message, CallbackQuery)):
            user_id = event.from_user.id if event.from_user else None

        courier = None
        session: AsyncSession | None = data.get("session")
        tenant_id = data.get("tenant_id")
        if user_id and session is not None and tenant_id is not None:
            courier = await get_courier_by_telegram_id(session, tenant_id, user_id)
            if courier is None:
                logger.info("Unknown courier: tenant=%s, telegram_id=%s", tenant_id, user_id)
        elif session is None:
            logger.warning("Session not found in data. Make sure DatabaseMiddleware is registered before CourierMiddleware")

        data['courier'] = courier
        return await handler(event, data)
