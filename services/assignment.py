"""
Кто получает заказ: принятие (CAS searching -> assigned) и снятие курьера
обратно в поиск с новой рассылкой.
"""
import logging
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Order, OrderCandidate, OrderStatus, Courier, TenantSettings, COURIER_HELD_STATUSES
from services import audit
from services.candidates import CandidateRegistry
from services.errors import PreconditionFailed, Unauthorized
from services.messaging import MessageLifecycleManager
from services.order_store import OrderStore, transaction, utcnow

logger = logging.getLogger(__name__)

RELEASE_REASON = "cancelled via chat"


def _pick_winner(
    candidates: Sequence[OrderCandidate],
    courier: Courier,
    chat_id: Optional[int],
    message_id: Optional[int],
) -> Optional[OrderCandidate]:
    """Кандидат, через которого принят заказ: личное предложение курьеру или нажатое сообщение."""
    for candidate in candidates:
        if candidate.courier_id == courier.id:
            return candidate
    for candidate in candidates:
        if chat_id is not None and candidate.chat_id == chat_id and candidate.message_id == message_id:
            return candidate
    return None


class AssignmentCoordinator:

    def __init__(self, lifecycle: MessageLifecycleManager):
        self.lifecycle = lifecycle

    async def accept(
        self,
        session: AsyncSession,
        order: Order,
        courier: Optional[Courier],
        settings: TenantSettings,
        *,
        chat_id: Optional[int] = None,
        message_id: Optional[int] = None,
    ) -> str:
        """
        Принять заказ. Из одновременных нажатий побеждает ровно одно.

        Raises:
            Unauthorized: курьер не зарегистрирован или не активен
            PreconditionFailed: заказ уже принят
        """
        if courier is None or not courier.is_active:
            raise Unauthorized("❌ Вы не зарегистрированы как курьер", details="Courier not registered", order_id=order.id)

        now = utcnow()
        previous_branch_message_id = order.branch_message_id

        async with transaction(session, order_id=order.id, courier_id=courier.id):
            if not await OrderStore.try_assign(session, order.id, courier.id, now):
                raise PreconditionFailed(
                    "❌ Заказ уже принят другим курьером",
                    details="Order already taken",
                    order_id=order.id,
                    courier_id=courier.id,
                )
            live = await CandidateRegistry.list_live(session, order.id)
            winner = _pick_winner(live, courier, chat_id, message_id)
            losers = await CandidateRegistry.cancel_all(session, order.id, keep_id=winner.id if winner else None, now=now)
            if winner is not None:
                winner.courier_id = courier.id
            audit.record(
                session,
                order.tenant_id,
                f"Курьер {courier.full_name} принял заказ #{order.display_number}",
                details={"order_id": order.id, "courier_id": courier.id, "action": "accept"},
            )

        # Побочные эффекты в чатах только после коммита
        retired = list(losers)
        if winner is not None and winner.message_id:
            retired.append(winner)
        await self.lifecycle.retire_candidates(retired, settings.courier_bot_token)
        branch = order.branch
        if branch:
            await self.lifecycle.retire(branch.telegram_bot_token, branch.telegram_chat_id, previous_branch_message_id)

        order = await OrderStore.get_order(session, order.id)
        private_message_id = await self.lifecycle.announce_assignment(order, courier, settings.courier_bot_token)
        async with transaction(session, order_id=order.id, courier_id=courier.id):
            # Пока шла отправка, курьера могли снять с заказа
            still_held = await OrderStore.try_update(
                session, order.id,
                status=COURIER_HELD_STATUSES, courier_id=courier.id,
                courier_message_id=private_message_id,
            )
            if still_held and winner is not None:
                winner.message_id = None

        if not still_held:
            await self.lifecycle.retire(settings.courier_bot_token, courier.telegram_user_id, private_message_id)
            raise PreconditionFailed(
                details="Order changed concurrently",
                order_id=order.id,
                courier_id=courier.id,
            )

        logger.info("Order accepted: id=%s, courier=%s, private_message=%s", order.id, courier.id, private_message_id)
        return "✅ Заказ принят"

    async def release(
        self,
        session: AsyncSession,
        order: Order,
        courier: Optional[Courier],
        settings: TenantSettings,
        *,
        reason: str = RELEASE_REASON,
    ) -> str:
        """
        Курьер отказывается от заказа: заказ снова в поиске, курьер снят,
        кандидаты отменены, их сообщения и личное сообщение курьера удалены,
        затем новая рассылка.

        Raises:
            Unauthorized: заказ назначен не этому курьеру
            PreconditionFailed: заказ уже не у курьера (завершён, снят повторно)
        """
        if courier is None or order.courier_id != courier.id:
            raise Unauthorized(
                "Это не ваш заказ",
                details="Order is assigned to another courier",
                order_id=order.id,
                courier_id=courier.id if courier else None,
            )
        if order.status not in COURIER_HELD_STATUSES:
            raise PreconditionFailed(
                "⚠️ Заказ уже нельзя отменить",
                details=f"Order status is {order.status.value}",
                order_id=order.id,
                courier_id=courier.id,
            )

        now = utcnow()
        previous_courier_message_id = order.courier_message_id

        async with transaction(session, order_id=order.id, courier_id=courier.id):
            released = await OrderStore.try_transition(
                session,
                order.id,
                from_status=COURIER_HELD_STATUSES,
                to_status=OrderStatus.SEARCHING,
                actor_id=courier.id,
                courier_id=None,
                courier_message_id=None,
                assigned_at=None,
                en_route_at=None,
            )
            if not released:
                raise PreconditionFailed(
                    "⚠️ Заказ уже нельзя отменить",
                    details="Order changed concurrently",
                    order_id=order.id,
                    courier_id=courier.id,
                )
            await CandidateRegistry.stop_readiness_timers(session, order.id, now)
            cancelled = await CandidateRegistry.cancel_all(session, order.id, now=now)
            audit.record(
                session,
                order.tenant_id,
                f"Курьер {courier.full_name} отменил заказ через Telegram",
                details={"order_id": order.id, "courier_id": courier.id, "action": "release", "reason": reason},
            )

        await self.lifecycle.retire_candidates(cancelled, settings.courier_bot_token)
        await self.lifecycle.retire(settings.courier_bot_token, courier.telegram_user_id, previous_courier_message_id)

        order = await OrderStore.get_order(session, order.id)
        async with transaction(session, order_id=order.id):
            await self.lifecycle.broadcast(session, order, now=utcnow())

        logger.info("Order released: id=%s, courier=%s, reason=%s", order.id, courier.id, reason)
        return "Заказ отменен. Курьер снят с заказа."
