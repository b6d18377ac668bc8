from aiogram.types import (
    InlineKeyboardMarkup, InlineKeyboardButton,
    ReplyKeyboardMarkup, KeyboardButton, ReplyKeyboardRemove,
)

# Префиксы callback_data. complete_ принимаем и в коротком виде (старые кнопки)
ACCEPT_PREFIX = "accept_order_"
EN_ROUTE_PREFIX = "en_route_"
COMPLETE_PREFIX = "complete_order_"
COMPLETE_SHORT_PREFIX = "complete_"
CANCEL_PREFIX = "cancel_order_"


def get_accept_order_kb(order_id: int) -> InlineKeyboardMarkup:
    """Кнопка принятия заказа в группе филиала / канале исполнителя."""
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="✅ Принять заказ", callback_data=f"{ACCEPT_PREFIX}{order_id}")]
    ])


def get_courier_actions_kb(order_id: int) -> InlineKeyboardMarkup:
    """Действия курьера по назначенному заказу (личное сообщение)."""
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="🚗 Выехал", callback_data=f"{EN_ROUTE_PREFIX}{order_id}"),
            InlineKeyboardButton(text="✅ Выполнено", callback_data=f"{COMPLETE_PREFIX}{order_id}"),
        ],
        [InlineKeyboardButton(text="❌ Отменить заказ", callback_data=f"{CANCEL_PREFIX}{order_id}")],
    ])


def get_location_request_kb() -> ReplyKeyboardMarkup:
    # Inline-кнопки не умеют запрашивать геолокацию, только reply keyboard
    return ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text="📍 Поделиться местоположением", request_location=True)]],
        resize_keyboard=True,
        one_time_keyboard=True,
    )


def get_remove_kb() -> ReplyKeyboardRemove:
    return ReplyKeyboardRemove()
