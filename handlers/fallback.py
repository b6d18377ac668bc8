"""
Обработчик необработанных обновлений.
Подключается последним, ловит сообщения и callback, которые не попали в другие хендлеры.
Webhook всё равно отвечает 200, чтобы Telegram не слал апдейт повторно.
"""
import logging
from typing import Optional

from aiogram import Bot, Router, types

from database.models import Courier
from handlers.actions import GatewayReply, LocationFilter
from services.telegram_utils import TelegramMessenger

logger = logging.getLogger(__name__)
router = Router()


@router.message(LocationFilter())
async def fallback_location(message: types.Message, courier: Optional[Courier] = None) -> GatewayReply:
    """Геолокация без активного запроса завершения."""
    if courier is None:
        return GatewayReply.ok("Courier not found")
    return GatewayReply.ok("No active location request")


@router.message()
async def fallback_message(message: types.Message) -> GatewayReply:
    return GatewayReply.ok()


@router.callback_query()
async def fallback_callback(callback: types.CallbackQuery, bot: Bot, messenger: TelegramMessenger) -> GatewayReply:
    """Любой callback, не обработанный другими хендлерами (устаревшие кнопки и т.п.)."""
    logger.info("Unknown callback: data=%s", callback.data)
    await messenger.answer_callback(bot.token, callback.id, "Действие устарело", show_alert=False)
    return GatewayReply.ok("Unknown action")
