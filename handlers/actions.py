"""
Разбор входящих событий в небольшой набор типизированных действий.

Кнопки: accept_order_<id>, en_route_<id>, complete_order_<id> (или complete_<id>),
cancel_order_<id>. Геолокация: message.location. Всё остальное не наше.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from aiogram.filters import Filter
from aiogram.types import CallbackQuery, Message

from keyboards.courier_kbs import (
    ACCEPT_PREFIX, EN_ROUTE_PREFIX, COMPLETE_PREFIX, COMPLETE_SHORT_PREFIX, CANCEL_PREFIX,
)


class ActionKind(str, enum.Enum):
    ACCEPT = "accept"
    EN_ROUTE = "en_route"
    COMPLETE = "complete"
    CANCEL = "cancel"


# complete_order_ проверяем раньше complete_
_PREFIXES = (
    (ACCEPT_PREFIX, ActionKind.ACCEPT),
    (EN_ROUTE_PREFIX, ActionKind.EN_ROUTE),
    (COMPLETE_PREFIX, ActionKind.COMPLETE),
    (COMPLETE_SHORT_PREFIX, ActionKind.COMPLETE),
    (CANCEL_PREFIX, ActionKind.CANCEL),
)


@dataclass(frozen=True)
class CourierAction:
    kind: ActionKind
    order_id: int


@dataclass(frozen=True)
class LocationShared:
    latitude: float
    longitude: float


def parse_callback_data(data: Optional[str]) -> Optional[CourierAction]:
    if not data:
        return None
    for prefix, kind in _PREFIXES:
        if data.startswith(prefix):
            raw_id = data[len(prefix):]
            if not raw_id.isdigit():
                return None
            return CourierAction(kind=kind, order_id=int(raw_id))
    return None


def parse_location(message: Message) -> Optional[LocationShared]:
    if message.location is None:
        return None
    return LocationShared(latitude=message.location.latitude, longitude=message.location.longitude)


class CourierActionFilter(Filter):
    """Пропускает callback с кнопкой нужного типа и кладёт в хендлер action: CourierAction."""

    def __init__(self, *kinds: ActionKind):
        self.kinds = set(kinds)

    async def __call__(self, callback: CallbackQuery) -> Union[bool, dict[str, Any]]:
        action = parse_callback_data(callback.data)
        if action is None or action.kind not in self.kinds:
            return False
        return {"action": action}


class LocationFilter(Filter):
    async def __call__(self, message: Message) -> Union[bool, dict[str, Any]]:
        location = parse_location(message)
        if location is None:
            return False
        return {"location": location}


@dataclass
class GatewayReply:
    """Ответ webhook: HTTP-статус и JSON."""
    status: int = 200
    body: dict[str, Any] = field(default_factory=lambda: {"ok": True})

    @classmethod
    def ok(cls, message: Optional[str] = None, **extra) -> "GatewayReply":
        body = {"ok": True}
        if message is not None:
            body["message"] = message
        body.update(extra)
        return cls(200, body)

    @classmethod
    def error(cls, status: int, error: str, details: Optional[str] = None) -> "GatewayReply":
        return cls(status, {"error": error, "details": details or error})
