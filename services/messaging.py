"""
Жизненный цикл сообщений по заказу.

На пару (заказ, аудитория) не больше одного живого сообщения: перед отправкой
нового удаляем предыдущее, если его id известен. Ошибки удаления только логируем,
Telegram мог удалить сообщение сам.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Order, OrderCandidate, OrderStatus, Courier
from keyboards.courier_kbs import get_accept_order_kb, get_courier_actions_kb
from services import order_messages
from services.candidates import CandidateRegistry
from services.db_ops import list_executors_for_branch
from services.order_store import OrderStore
from services.telegram_utils import TelegramMessenger

logger = logging.getLogger(__name__)


class MessageLifecycleManager:

    def __init__(self, messenger: TelegramMessenger):
        self.messenger = messenger

    async def replace(
        self,
        token: str,
        chat_id: int,
        previous_id: Optional[int],
        text: str,
        reply_markup=None,
    ) -> Optional[int]:
        """Удалить предыдущее сообщение аудитории и отправить новое. Возвращает новый id."""
        if previous_id:
            await self.retire(token, chat_id, previous_id)
        return await self.messenger.send_message(token, chat_id, text, reply_markup=reply_markup)

    async def retire(self, token: Optional[str], chat_id: Optional[int], message_id: Optional[int]) -> bool:
        if not token or not chat_id or not message_id:
            return False
        deleted = await self.messenger.delete_message(token, chat_id, message_id)
        if not deleted:
            logger.warning("Message not deleted (best-effort): chat=%s, message=%s", chat_id, message_id)
        return deleted

    def _candidate_token(self, candidate: OrderCandidate, courier_bot_token: Optional[str]) -> Optional[str]:
        # Предложение в канале исполнителя отправлено его ботом, личное курьерским
        if candidate.executor_id is not None:
            return candidate.executor.telegram_bot_token if candidate.executor else None
        return courier_bot_token

    async def retire_candidates(
        self,
        candidates: Iterable[OrderCandidate],
        courier_bot_token: Optional[str],
    ) -> int:
        deleted = 0
        for candidate in candidates:
            token = self._candidate_token(candidate, courier_bot_token)
            if await self.retire(token, candidate.chat_id, candidate.message_id):
                deleted += 1
        return deleted

    async def broadcast(self, session: AsyncSession, order: Order, *, now: datetime) -> List[OrderCandidate]:
        """
        Разослать заказ: сообщение в группу филиала (заменяет предыдущее)
        и предложения всем активным исполнителям филиала.

        Сначала отправка, затем условная запись: id сообщений и кандидаты
        сохраняются, только если заказ всё ещё в поиске без курьера. Если его
        успели принять, отправленные сообщения удаляются и возвращается [].
        Коммитит вызывающий.
        """
        values = {"search_started_at": now}
        branch = order.branch
        branch_configured = bool(branch and branch.telegram_bot_token and branch.telegram_chat_id)
        if branch_configured:
            values["branch_message_id"] = await self.replace(
                branch.telegram_bot_token,
                branch.telegram_chat_id,
                order.branch_message_id,
                order_messages.format_branch_broadcast(order),
                reply_markup=get_accept_order_kb(order.id),
            )
        else:
            logger.warning("Branch bot not configured, broadcast skipped: order=%s, branch=%s", order.id, order.branch_id)

        offers = []
        executors = await list_executors_for_branch(session, order.tenant_id, order.branch_id)
        for executor in executors:
            if not executor.telegram_bot_token or not executor.telegram_chat_id:
                continue
            message_id = await self.messenger.send_message(
                executor.telegram_bot_token,
                executor.telegram_chat_id,
                order_messages.format_executor_offer(order),
                reply_markup=get_accept_order_kb(order.id),
            )
            if message_id is not None:
                offers.append((executor, message_id))

        if not await OrderStore.try_update(
            session, order.id, status=OrderStatus.SEARCHING, courier_id=None, **values,
        ):
            logger.info("Order taken during broadcast, retiring sent messages: id=%s", order.id)
            if branch_configured:
                await self.retire(branch.telegram_bot_token, branch.telegram_chat_id, values["branch_message_id"])
            for executor, message_id in offers:
                await self.retire(executor.telegram_bot_token, executor.telegram_chat_id, message_id)
            return []

        candidates = []
        for executor, message_id in offers:
            candidate = await CandidateRegistry.add(
                session,
                order.id,
                executor_id=executor.id,
                chat_id=executor.telegram_chat_id,
                message_id=message_id,
                now=now,
            )
            candidate.executor = executor
            candidates.append(candidate)

        logger.info(
            "Order broadcast: id=%s, branch_message=%s, executors=%s",
            order.id, values.get("branch_message_id"), len(candidates)
        )
        return candidates

    async def announce_assignment(self, order: Order, courier: Courier, courier_bot_token: str) -> Optional[int]:
        """Личное сообщение назначенному курьеру с кнопками действий."""
        return await self.replace(
            courier_bot_token,
            courier.telegram_user_id,
            order.courier_message_id,
            order_messages.format_courier_message(order, courier),
            reply_markup=get_courier_actions_kb(order.id),
        )

    async def clear_order(
        self,
        order: Order,
        candidates: Iterable[OrderCandidate],
        courier_bot_token: Optional[str],
        courier: Optional[Courier] = None,
    ) -> None:
        """Убрать все живые сообщения заказа: группа филиала, кандидаты, личное сообщение курьера."""
        branch = order.branch
        if branch:
            await self.retire(branch.telegram_bot_token, branch.telegram_chat_id, order.branch_message_id)
        await self.retire_candidates(candidates, courier_bot_token)
        if courier is not None:
            await self.retire(courier_bot_token, courier.telegram_user_id, order.courier_message_id)
