"""
Middleware для dependency injection сессий БД.
"""
import logging
from typing import Callable, Dict, Any, Awaitable, Optional
from aiogram import BaseMiddleware
from aiogram.types import TelegramObject
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.exc import OperationalError

from handlers.actions import GatewayReply

logger = logging.getLogger(__name__)


class DatabaseMiddleware(BaseMiddleware):
    """
    Middleware для автоматического создания и закрытия сессий БД.
    Фабрика сессий берётся из workflow data (session_maker), иначе глобальная.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any]
    ) -> Any:
        factory = data.get("session_maker") or self.session_factory
        if factory is None:
            from database.core import session_maker as factory
        try:
            async with factory() as session:
                data['session'] = session
                return await handler(event, data)
        except (OperationalError, ConnectionRefusedError) as e:
            # Важно: пишем traceback, чтобы было видно где именно упало
            logger.error("Database connection error: %s", e, exc_info=True)
            return GatewayReply.error(500, "Database unavailable", str(e))
