import itertools
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, List, Optional

import pytest
from aiogram.fsm.storage.memory import MemoryStorage
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from database.core import Base, build_session_maker
from database.models import (
    Tenant, TenantSettings, Branch, Courier, Executor, DeliveryZone, Order, OrderCandidate,
    OrderStatus, CandidateStatus, AuditLog, DELIVERY_TYPE_DELIVERY,
)
from services.assignment import AssignmentCoordinator
from services.geofence import EARTH_RADIUS_M
from services.messaging import MessageLifecycleManager
from services.telegram_utils import TelegramMessenger
from services.transitions import StatusTransitionEngine

# Уникальные id ботов: FSM-ключ включает bot id, так тесты не видят чужих состояний
_bot_ids = itertools.count(500000001)

DELIVERY_LAT = 50.4501
DELIVERY_LNG = 30.5234


def make_token() -> str:
    return f"{next(_bot_ids)}:TEST-token"


def point_north_of(lat: float, lng: float, meters: float) -> tuple[float, float]:
    """Точка на заданном расстоянии к северу (по меридиану haversine даёт ровно R*dφ)."""
    return lat + math.degrees(meters / EARTH_RADIUS_M), lng


@dataclass
class SentMessage:
    token: str
    chat_id: int
    message_id: int
    text: str
    reply_markup: Any = None


class FakeMessenger(TelegramMessenger):
    """Записывает вызовы Telegram вместо сети. get_bot настоящий, он нужен для Update и FSM."""

    def __init__(self):
        super().__init__()
        self.sent: List[SentMessage] = []
        self.deleted: List[tuple] = []
        self.answers: List[str] = []
        self.fail_deletes = False
        self._ids = itertools.count(1000)

    async def send_message(self, token, chat_id, text, *, reply_markup=None, parse_mode="Markdown"):
        message_id = next(self._ids)
        self.sent.append(SentMessage(token, chat_id, message_id, text, reply_markup))
        return message_id

    async def delete_message(self, token, chat_id, message_id):
        self.deleted.append((token, chat_id, message_id))
        return not self.fail_deletes

    async def answer_callback(self, token, callback_id, text, show_alert=True):
        self.answers.append(text)
        return True

    def sent_to(self, chat_id: int) -> List[SentMessage]:
        return [m for m in self.sent if m.chat_id == chat_id]

    def was_deleted(self, chat_id: int, message_id: int) -> bool:
        return any(d[1] == chat_id and d[2] == message_id for d in self.deleted)


@pytest.fixture
async def db_engine(tmp_path):
    # Файловая SQLite + NullPool: параллельные сессии идут через разные соединения (настоящие гонки)
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite3'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return build_session_maker(db_engine)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def lifecycle(messenger):
    return MessageLifecycleManager(messenger)


@pytest.fixture
def coordinator(lifecycle):
    return AssignmentCoordinator(lifecycle)


@pytest.fixture
def transitions(lifecycle, coordinator):
    return StatusTransitionEngine(lifecycle, coordinator)


@pytest.fixture(scope="session")
def dispatcher():
    # Роутеры модульные: Dispatcher собирается один раз на тестовую сессию
    from server import create_dispatcher
    return create_dispatcher(MemoryStorage())


@pytest.fixture
async def world(session_maker):
    """Партнёр, филиал с ботом, два курьера, исполнитель, зона."""
    async with session_maker() as s:
        tenant = Tenant(name="Pizza")
        s.add(tenant)
        await s.flush()

        settings = TenantSettings(
            tenant_id=tenant.id,
            courier_bot_token=make_token(),
            completion_radius_meters=100,
            require_location_on_completion=False,
        )
        branch = Branch(
            tenant_id=tenant.id,
            name="Центр",
            address="Хрещатик, 1",
            phone="+380000000000",
            telegram_chat_id=-100111,
            telegram_bot_token=make_token(),
        )
        s.add_all([settings, branch])
        await s.flush()

        courier = Courier(tenant_id=tenant.id, branch_id=branch.id, telegram_user_id=7001, name="Иван", lastname="Петров")
        other = Courier(tenant_id=tenant.id, branch_id=branch.id, telegram_user_id=7002, name="Олег", lastname="Сидоров")
        executor = Executor(
            tenant_id=tenant.id,
            branch_id=None,
            name="Служба",
            telegram_bot_token=make_token(),
            telegram_chat_id=-100222,
            km_calculation_enabled=True,
            price_per_km=Decimal("10"),
            km_graduation_meters=500,
        )
        zone = DeliveryZone(
            tenant_id=tenant.id,
            name="Зона 1",
            courier_payment=Decimal("50"),
            price=Decimal("80"),
        )
        s.add_all([courier, other, executor, zone])
        await s.commit()

        return SimpleNamespace(
            tenant_id=tenant.id,
            settings_id=settings.id,
            courier_bot_token=settings.courier_bot_token,
            branch_id=branch.id,
            branch_chat_id=branch.telegram_chat_id,
            branch_bot_token=branch.telegram_bot_token,
            courier_id=courier.id,
            courier_tg=courier.telegram_user_id,
            other_id=other.id,
            other_tg=other.telegram_user_id,
            executor_id=executor.id,
            executor_chat_id=executor.telegram_chat_id,
            executor_bot_token=executor.telegram_bot_token,
            zone_id=zone.id,
        )


@pytest.fixture
def make_order(session_maker, world):
    async def _make(
        status: OrderStatus = OrderStatus.ASSIGNED,
        courier_id: Optional[int] = "default",
        *,
        zone_id: Optional[int] = "default",
        executor_id: Optional[int] = "default",
        delivery_type: str = DELIVERY_TYPE_DELIVERY,
        delivery_lat: Optional[float] = DELIVERY_LAT,
        delivery_lng: Optional[float] = DELIVERY_LNG,
        distance_km: Optional[float] = 1.3,
        branch_message_id: Optional[int] = None,
        courier_message_id: Optional[int] = None,
        courier_payment_amount: Optional[Decimal] = None,
        archived: bool = False,
        candidates: int = 0,
        readiness_started_minutes_ago: int = 5,
    ) -> int:
        if courier_id == "default":
            courier_id = None if status == OrderStatus.SEARCHING else world.courier_id
        if zone_id == "default":
            zone_id = world.zone_id
        if executor_id == "default":
            executor_id = world.executor_id
        now = datetime.now(timezone.utc)
        async with session_maker() as s:
            order = Order(
                tenant_id=world.tenant_id,
                branch_id=world.branch_id,
                order_number="A-1",
                status=status,
                courier_id=courier_id,
                zone_id=zone_id,
                executor_id=executor_id,
                delivery_type=delivery_type,
                phone="+380991112233",
                delivery_address="Прорізна, 10",
                delivery_lat=delivery_lat,
                delivery_lng=delivery_lng,
                distance_km=distance_km,
                duration_minutes=12,
                total_amount=Decimal("420.50"),
                payment_breakdown=[{"method": "cash", "amount": 420.5, "cash_given": 500}],
                branch_message_id=branch_message_id,
                courier_message_id=courier_message_id,
                courier_payment_amount=courier_payment_amount,
                archived_at=now if archived else None,
            )
            s.add(order)
            await s.flush()
            for i in range(candidates):
                s.add(OrderCandidate(
                    order_id=order.id,
                    executor_id=world.executor_id,
                    chat_id=world.executor_chat_id,
                    message_id=900 + i,
                    status=CandidateStatus.PENDING,
                    readiness_started_at=now - timedelta(minutes=readiness_started_minutes_ago, seconds=10),
                ))
            await s.commit()
            return order.id
    return _make


@pytest.fixture
def load_order(session_maker):
    async def _load(order_id: int) -> Order:
        async with session_maker() as s:
            return await s.get(Order, order_id)
    return _load


@pytest.fixture
def load_candidates(session_maker):
    async def _load(order_id: int) -> List[OrderCandidate]:
        async with session_maker() as s:
            result = await s.execute(
                select(OrderCandidate).where(OrderCandidate.order_id == order_id).order_by(OrderCandidate.id)
            )
            return list(result.scalars().all())
    return _load


@pytest.fixture
def count_audit(session_maker):
    async def _count(action: Optional[str] = None) -> int:
        async with session_maker() as s:
            result = await s.execute(select(AuditLog))
            entries = result.scalars().all()
            if action is None:
                return len(entries)
            return sum(1 for e in entries if (e.details or {}).get("action") == action)
    return _count


@pytest.fixture
def set_settings(session_maker, world):
    async def _set(**values):
        async with session_maker() as s:
            settings = await s.get(TenantSettings, world.settings_id)
            for key, value in values.items():
                setattr(settings, key, value)
            await s.commit()
    return _set
