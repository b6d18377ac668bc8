"""
Исключения доставки.

Каждое исключение несёт короткий текст для курьера (alert) и HTTP-статус,
который вернёт webhook. Обработчик ошибок в handlers/errors.py превращает их
в ответ callback/сообщение и GatewayReply.
"""
from typing import Any, Optional


class DeliveryError(Exception):
    status: int = 500
    default_alert: str = "⚠️ Ошибка. Попробуйте ещё раз."

    def __init__(
        self,
        alert: Optional[str] = None,
        *,
        details: Optional[str] = None,
        order_id: Optional[int] = None,
        courier_id: Optional[int] = None,
    ):
        self.alert = alert or self.default_alert
        self.details = details or self.alert
        self.order_id = order_id
        self.courier_id = courier_id
        super().__init__(self.details)

    def to_body(self) -> dict[str, Any]:
        return {"error": self.alert, "details": self.details}


class NotFound(DeliveryError):
    status = 404
    default_alert = "❌ Заказ не найден"


class Unauthorized(DeliveryError):
    status = 403
    default_alert = "❌ Этот заказ назначен другому курьеру"


class PreconditionFailed(DeliveryError):
    """Действие не из того статуса. Не ошибка: ответ 200 и без записи в аудит."""
    status = 200
    default_alert = "⚠️ Действие недоступно для текущего статуса заказа"

    def to_body(self) -> dict[str, Any]:
        return {"ok": True, "message": self.details}


class PersistenceError(DeliveryError):
    status = 500
    default_alert = "❌ Ошибка сохранения. Попробуйте позже."


class ConfigurationError(DeliveryError):
    status = 500
    default_alert = "❌ Бот не настроен. Обратитесь к администратору."


class ExternalServiceError(Exception):
    """Сбой Telegram API. Поднимается и ловится только внутри TelegramMessenger."""
