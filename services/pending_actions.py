"""
Ожидающие действия курьера (запрос геолокации для завершения заказа).

Хранятся в FSM aiogram (Redis в проде): ключ: бот + чат + курьер, то есть
одна запись на курьера. TTL задаётся и в RedisStorage, и проверяется здесь
по requested_at (MemoryStorage сам ничего не удаляет).
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from aiogram.fsm.context import FSMContext

from config import config
from services.candidates import as_utc
from states.courier_states import CourierState

logger = logging.getLogger(__name__)


@dataclass
class PendingLocation:
    order_id: int
    requested_at: datetime
    prompt_message_id: Optional[int] = None


class PendingActions:

    def __init__(self, state: FSMContext, ttl_seconds: Optional[int] = None):
        self.state = state
        self.ttl = timedelta(seconds=ttl_seconds or config.PENDING_LOCATION_TTL)

    async def request_location(self, order_id: int, prompt_message_id: Optional[int], now: datetime) -> None:
        """Запомнить запрос (перезаписывает предыдущий)."""
        await self.state.set_state(CourierState.awaiting_location)
        await self.state.set_data({
            "order_id": order_id,
            "requested_at": now.isoformat(),
            "prompt_message_id": prompt_message_id,
        })

    async def peek(self) -> Optional[PendingLocation]:
        """Текущий запрос без проверки TTL (для повторного запроса, старую подсказку удаляем)."""
        if await self.state.get_state() != CourierState.awaiting_location.state:
            return None
        data = await self.state.get_data()
        if "order_id" not in data:
            return None
        return PendingLocation(
            order_id=int(data["order_id"]),
            requested_at=as_utc(datetime.fromisoformat(data["requested_at"])),
            prompt_message_id=data.get("prompt_message_id"),
        )

    async def current(self, now: datetime) -> Optional[PendingLocation]:
        """Живой запрос или None. Просроченный удаляется."""
        pending = await self.peek()
        if pending is None:
            return None
        if as_utc(now) - pending.requested_at > self.ttl:
            logger.info("Pending location request expired: order=%s", pending.order_id)
            await self.state.clear()
            return None
        return pending

    async def clear(self, order_id: Optional[int] = None) -> Optional[PendingLocation]:
        """Снять запрос. С order_id только если запрос относится к этому заказу."""
        pending = await self.peek()
        if pending is None:
            return None
        if order_id is not None and pending.order_id != order_id:
            return None
        await self.state.clear()
        return pending
