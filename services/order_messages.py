"""
Тексты сообщений по заказу (Markdown).

Только форматирование: когда и куда отправлять, решает MessageLifecycleManager.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional
from urllib.parse import quote

from database.models import Order, Courier
from services.telegram_utils import escape_markdown

CURRENCY = "грн"
SEPARATOR = "──────────────────"

LOCATION_REQUEST_TEXT = (
    "📍 Для завершения заказа поделитесь своим местоположением, "
    "чтобы подтвердить, что вы находитесь у клиента."
)
MISSING_COORDINATES_TEXT = "❌ У заказа отсутствуют координаты доставки. Обратитесь к администратору."


def _money(value: Any) -> str:
    if value is None:
        value = 0
    return f"{Decimal(str(value)):.2f} {CURRENCY}"


def _meters(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _or_dash(value: Optional[str]) -> str:
    return escape_markdown(value) if value else "Не указан"


def generate_route_url(order: Order) -> str:
    """Ссылка на маршрут в Google Maps до клиента: по координатам, иначе по адресу."""
    if order.delivery_lat is not None and order.delivery_lng is not None:
        destination = f"{order.delivery_lat},{order.delivery_lng}"
    else:
        destination = quote(order.delivery_address or "")
    return f"https://www.google.com/maps/dir/?api=1&destination={destination}"


def format_address_details(order: Order) -> str:
    lines = []
    if order.floor:
        lines.append(f"🏢 Этаж: {escape_markdown(order.floor)}")
    if order.apartment:
        lines.append(f"🚪 Квартира: {escape_markdown(order.apartment)}")
    if order.entrance:
        lines.append(f"🚶 Парадная: {escape_markdown(order.entrance)}")
    if order.intercom:
        lines.append(f"🔔 Домофон: {escape_markdown(order.intercom)}")
    return "".join(f"\n{line}" for line in lines)


def format_payment(order: Order) -> str:
    """
    Оплата и сдача по payment_breakdown.
    Элемент: {"method": "cash"|..., "name": str, "amount": num, "paid": bool, "cash_given": num}
    """
    breakdown = order.payment_breakdown or []
    if not breakdown:
        return "💳 Оплата: Не указан"

    parts = []
    change_parts = []
    for split in breakdown:
        amount = Decimal(str(split.get("amount") or 0))
        if split.get("method") == "cash":
            parts.append(f"наличкой {_money(amount)}")
            cash_given = split.get("cash_given")
            if cash_given is not None and Decimal(str(cash_given)) > amount:
                change = Decimal(str(cash_given)) - amount
                change_parts.append(f"{_money(change)} (с {_money(cash_given)})")
        else:
            status = "Оплачено" if split.get("paid") else "Не оплачено"
            parts.append(f"{escape_markdown(split.get('name') or split.get('method') or '')} {_money(amount)} {status}")

    text = f"💳 Оплата: {', '.join(parts)}"
    if change_parts:
        text += f"\n💵 Подготовить сдачу: {', '.join(change_parts)}"
    return text


def format_order_body(order: Order) -> str:
    branch = order.branch
    distance = ""
    if order.distance_km is not None and order.duration_minutes is not None:
        distance = f"🛣 Расстояние / время пути: {order.distance_km:.1f} км / {order.duration_minutes} мин\n"

    comment = f"\n💬 Комментарий: {escape_markdown(order.comment)}" if order.comment else ""

    return (
        f"🏢 Филиал: {_or_dash(branch.name if branch else None)}\n"
        f"🏪 Адрес филиала: {_or_dash(branch.address if branch else None)}\n"
        f"☎️ Телефон филиала: {_or_dash(branch.phone if branch else None)}\n\n"
        f"{SEPARATOR}\n\n"
        f"📱 Телефон клиента: {_or_dash(order.phone)}\n"
        f"📍 Адрес доставки: {_or_dash(order.delivery_address)}{format_address_details(order)}\n\n"
        f"📍 [Проложить маршрут]({generate_route_url(order)})\n"
        f"{distance}\n"
        f"📦 Состав заказа: {_or_dash(order.items_summary)}{comment}\n\n"
        f"{SEPARATOR}\n\n"
        f"💰 Сумма заказа: {_money(order.total_amount)}\n"
        f"{format_payment(order)}"
    )


def format_branch_broadcast(order: Order) -> str:
    return f"🆕 *НОВЫЙ ЗАКАЗ #{escape_markdown(order.display_number)}*\n{format_order_body(order)}"


def format_executor_offer(order: Order) -> str:
    return f"📢 *Заказ #{escape_markdown(order.display_number)} ищет курьера*\n{format_order_body(order)}"


def format_courier_message(order: Order, courier: Courier) -> str:
    return (
        f"✅ *Заказ #{escape_markdown(order.display_number)} назначен вам*\n"
        f"👤 Курьер: {escape_markdown(courier.full_name)}\n"
        f"{format_order_body(order)}"
    )


def format_completion_confirmed(distance_m: float) -> str:
    return f"✅ Заказ успешно завершен!\n\nВаше расстояние от адреса доставки: {_meters(distance_m)} м"


def format_too_far(distance_m: float, radius_m: int) -> str:
    return (
        f"⚠️ Вы находитесь на расстоянии {_meters(distance_m)} метров от адреса доставки.\n\n"
        f"Для завершения заказа необходимо быть на месте клиента (в радиусе {radius_m} метров)."
    )
