"""
Хранилище заказов.

Единственная точка сериализации: условный UPDATE: «поменять статус на X,
только если текущий статус Y и курьер Z». Победитель определяется по rowcount.
Никаких блокировок в процессе.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Iterable, Union, AsyncIterator

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.models import Order, OrderStatus
from services.errors import NotFound, PersistenceError

logger = logging.getLogger(__name__)

StatusArg = Union[OrderStatus, Iterable[OrderStatus]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@asynccontextmanager
async def transaction(
    session: AsyncSession,
    *,
    order_id: Optional[int] = None,
    courier_id: Optional[int] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Коммит при успехе, rollback при любой ошибке.
    Ошибки SQLAlchemy превращаются в PersistenceError.
    Сессия из middleware уже в транзакции, session.begin() не вызываем.
    """
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as e:
        logger.error("DB write failed: order=%s, courier=%s, err=%s", order_id, courier_id, e, exc_info=True)
        await session.rollback()
        raise PersistenceError(details=str(e), order_id=order_id, courier_id=courier_id) from e
    except BaseException:
        await session.rollback()
        raise


class OrderStore:
    """Чтение заказов и условные переходы статусов."""

    @staticmethod
    async def get_order(
        session: AsyncSession,
        order_id: int,
        tenant_id: Optional[int] = None,
    ) -> Order:
        """
        Получить заказ со связями (филиал, курьер, зона, исполнитель).
        Архивный заказ считается не найденным.

        Raises:
            NotFound
        """
        stmt = (
            select(Order)
            .options(
                selectinload(Order.branch),
                selectinload(Order.courier),
                selectinload(Order.zone),
                selectinload(Order.executor),
            )
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if tenant_id is not None:
            stmt = stmt.where(Order.tenant_id == tenant_id)
        result = await session.execute(stmt)
        order = result.scalar_one_or_none()
        if order is None or order.archived_at is not None:
            raise NotFound(details="Order not found", order_id=order_id)
        return order

    @staticmethod
    async def try_assign(session: AsyncSession, order_id: int, courier_id: int, now: Optional[datetime] = None) -> bool:
        """
        searching & courier_id IS NULL -> assigned.
        Из двух одновременных принятий выигрывает ровно одно.
        """
        now = now or utcnow()
        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.SEARCHING,
                Order.courier_id.is_(None),
                Order.archived_at.is_(None),
            )
            .values(
                status=OrderStatus.ASSIGNED,
                courier_id=courier_id,
                assigned_at=now,
                branch_message_id=None,
                search_started_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        won = result.rowcount == 1
        logger.info("Order assign: id=%s, courier=%s, won=%s", order_id, courier_id, won)
        return won

    @staticmethod
    async def try_transition(
        session: AsyncSession,
        order_id: int,
        *,
        from_status: StatusArg,
        to_status: OrderStatus,
        actor_id: int,
        **values,
    ) -> bool:
        """
        Условный переход: статус из from_status и курьер == actor_id.
        Дополнительные колонки передаются через values. Не коммитит.

        Returns:
            True, если строка обновлена (переход выполнен)
        """
        if isinstance(from_status, OrderStatus):
            expected = [from_status]
        else:
            expected = list(from_status)

        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_(expected),
                Order.courier_id == actor_id,
                Order.archived_at.is_(None),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        ok = result.rowcount == 1
        if ok:
            logger.info(
                "Order status updated: id=%s, %s -> %s, courier=%s",
                order_id, "|".join(s.value for s in expected), to_status.value, actor_id
            )
        else:
            logger.info(
                "Order transition rejected: id=%s, expected=%s, to=%s, courier=%s",
                order_id, "|".join(s.value for s in expected), to_status.value, actor_id
            )
        return ok

    @staticmethod
    async def try_update(
        session: AsyncSession,
        order_id: int,
        *,
        status: StatusArg,
        courier_id: Optional[int],
        **values,
    ) -> bool:
        """
        Записать колонки без смены статуса, только если заказ всё ещё в status
        и у courier_id (None: курьера нет). Так пишутся id сообщений,
        отправленных до записи. Не коммитит.
        """
        expected = [status] if isinstance(status, OrderStatus) else list(status)
        owner = Order.courier_id.is_(None) if courier_id is None else Order.courier_id == courier_id

        stmt = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_(expected),
                owner,
                Order.archived_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        ok = result.rowcount == 1
        if not ok:
            logger.info(
                "Order update skipped: id=%s, expected=%s, courier=%s, columns=%s",
                order_id, "|".join(s.value for s in expected), courier_id, sorted(values)
            )
        return ok
