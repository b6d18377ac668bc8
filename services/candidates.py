"""
Реестр кандидатов: кому предложен заказ, с каким сообщением и таймером готовности.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.models import OrderCandidate, CandidateStatus

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    # SQLite возвращает naive datetime, хотя пишем в UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def elapsed_minutes(started_at: datetime, now: datetime) -> int:
    seconds = (as_utc(now) - as_utc(started_at)).total_seconds()
    return max(int(seconds // 60), 0)


class CandidateRegistry:

    @staticmethod
    async def add(
        session: AsyncSession,
        order_id: int,
        *,
        chat_id: Optional[int],
        message_id: Optional[int],
        now: datetime,
        courier_id: Optional[int] = None,
        executor_id: Optional[int] = None,
    ) -> OrderCandidate:
        candidate = OrderCandidate(
            order_id=order_id,
            courier_id=courier_id,
            executor_id=executor_id,
            chat_id=chat_id,
            message_id=message_id,
            status=CandidateStatus.PENDING,
            readiness_started_at=now,
        )
        session.add(candidate)
        return candidate

    @staticmethod
    async def list_live(session: AsyncSession, order_id: int) -> Sequence[OrderCandidate]:
        stmt = (
            select(OrderCandidate)
            .options(selectinload(OrderCandidate.executor))
            .where(
                OrderCandidate.order_id == order_id,
                OrderCandidate.status == CandidateStatus.PENDING,
            )
            .order_by(OrderCandidate.id)
        )
        result = await session.execute(stmt)
        return result.scalars().all()

    @staticmethod
    async def stop_readiness_timers(session: AsyncSession, order_id: int, now: datetime) -> List[OrderCandidate]:
        """Остановить все запущенные таймеры заказа: прошедшее время -> readiness_minutes."""
        stmt = (
            select(OrderCandidate)
            .where(
                OrderCandidate.order_id == order_id,
                OrderCandidate.readiness_started_at.is_not(None),
            )
        )
        result = await session.execute(stmt)
        stopped = list(result.scalars().all())
        for candidate in stopped:
            candidate.readiness_minutes = elapsed_minutes(candidate.readiness_started_at, now)
            candidate.readiness_started_at = None
        # autoflush выключен: последующие выборки должны видеть изменения
        await session.flush()
        if stopped:
            logger.info("Readiness timers stopped: order=%s, count=%s", order_id, len(stopped))
        return stopped

    @staticmethod
    async def cancel_all(
        session: AsyncSession,
        order_id: int,
        keep_id: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[OrderCandidate]:
        """
        Отменить всех живых кандидатов, кроме keep_id, с остановкой их таймеров.
        Возвращает отменённые строки (их сообщения нужно удалить).
        """
        now = now or datetime.now(timezone.utc)
        live = await CandidateRegistry.list_live(session, order_id)
        cancelled = [c for c in live if c.id != keep_id]
        for candidate in cancelled:
            candidate.status = CandidateStatus.CANCELLED
            if candidate.readiness_started_at is not None:
                candidate.readiness_minutes = elapsed_minutes(candidate.readiness_started_at, now)
                candidate.readiness_started_at = None
        await session.flush()
        if cancelled:
            logger.info("Candidates cancelled: order=%s, ids=%s", order_id, [c.id for c in cancelled])
        return cancelled
