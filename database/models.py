import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    BigInteger, Integer, String, Boolean, ForeignKey, DateTime, Float, Numeric, JSON, Text,
    Enum as PgEnum, Index, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database.core import Base
from config import config


# В SQLite автоинкремент корректно работает только для PRIMARY KEY типа INTEGER (rowid).
# Поэтому в dev/test режиме на SQLite используем Integer для PK, а в Postgres оставляем BigInteger.
PK_INT = Integer if config.DB_DIALECT in ("sqlite", "sqlite3") else BigInteger

# --- Enums ---

class OrderStatus(str, enum.Enum):
    SEARCHING = "searching"
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    COMPLETING = "completing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Статусы, в которых у заказа обязан быть курьер
COURIER_HELD_STATUSES = (OrderStatus.ASSIGNED, OrderStatus.EN_ROUTE, OrderStatus.COMPLETING)

DELIVERY_TYPE_DELIVERY = "delivery"


class CandidateStatus(str, enum.Enum):
    PENDING = "pending"
    CANCELLED = "cancelled"


class VehicleType(str, enum.Enum):
    FOOT = "foot"
    BICYCLE = "bicycle"
    SCOOTER = "scooter"
    CAR = "car"


class AuditLevel(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

# --- Models ---

class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        {"comment": "Партнёры (заведения)"},
    )


class TenantSettings(Base):
    __tablename__ = "tenant_settings"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, unique=True, index=True)
    courier_bot_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # None -> config.DEFAULT_COMPLETION_RADIUS_M
    completion_radius_meters: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    require_location_on_completion: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        {"comment": "Настройки партнёра для курьерского бота"},
    )


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    # Группа филиала, куда уходит рассылка заказа
    telegram_chat_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    telegram_bot_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    __table_args__ = (
        {"comment": "Филиалы"},
    )


class Courier(Base):
    __tablename__ = "couriers"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id: Mapped[Optional[int]] = mapped_column(ForeignKey("branches.id"), nullable=True, index=True)
    telegram_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    lastname: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    vehicle_type: Mapped[Optional[VehicleType]] = mapped_column(PgEnum(VehicleType, name="vehicle_type_enum"), nullable=True)
    is_external: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.lastname or ''}".strip()

    __table_args__ = (
        UniqueConstraint("tenant_id", "telegram_user_id", name="uq_courier_tenant_tg"),
        {"comment": "Курьеры (свои и внешние)"},
    )


class Executor(Base):
    """Внешний исполнитель (служба доставки) со своим ботом и каналом."""
    __tablename__ = "executors"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    # None: обслуживает все филиалы
    branch_id: Mapped[Optional[int]] = mapped_column(ForeignKey("branches.id"), nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    telegram_bot_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    telegram_chat_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Доплата за километраж: только для заказов этого исполнителя
    km_calculation_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    price_per_km: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    # None -> config.DEFAULT_KM_GRADUATION_METERS, 0 -> без округления
    km_graduation_meters: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        {"comment": "Внешние исполнители"},
    )


class DeliveryZone(Base):
    __tablename__ = "delivery_zones"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    courier_payment: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    # Цена доставки для клиента; у зон исполнителя служит запасной базой выплаты
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    __table_args__ = (
        {"comment": "Зоны доставки и тарифы курьеров"},
    )


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    branch_id: Mapped[int] = mapped_column(ForeignKey("branches.id"), nullable=False, index=True)
    courier_id: Mapped[Optional[int]] = mapped_column(ForeignKey("couriers.id"), nullable=True, index=True)
    zone_id: Mapped[Optional[int]] = mapped_column(ForeignKey("delivery_zones.id"), nullable=True)
    # Заказ исполнителя (внешней службы); None: свои курьеры
    executor_id: Mapped[Optional[int]] = mapped_column(ForeignKey("executors.id"), nullable=True)
    # delivery | pickup
    delivery_type: Mapped[str] = mapped_column(String, default=DELIVERY_TYPE_DELIVERY, nullable=False)

    order_number: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[OrderStatus] = mapped_column(
        PgEnum(OrderStatus, name="order_status_enum"), default=OrderStatus.SEARCHING, nullable=False, index=True
    )

    phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    delivery_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    apartment: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    entrance: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    floor: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    intercom: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    items_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    delivery_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    distance_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    total_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    # [{"method": "cash", "name": "...", "amount": 100, "paid": false, "cash_given": 200}]
    payment_breakdown: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    courier_payment_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    # Сообщения: рассылка в группу филиала и личное сообщение назначенному курьеру
    branch_message_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    courier_message_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    search_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    en_route_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    branch: Mapped["Branch"] = relationship("Branch")
    courier: Mapped[Optional["Courier"]] = relationship("Courier")
    zone: Mapped[Optional["DeliveryZone"]] = relationship("DeliveryZone")
    executor: Mapped[Optional["Executor"]] = relationship("Executor")
    candidates: Mapped[List["OrderCandidate"]] = relationship("OrderCandidate", back_populates="order")

    @property
    def display_number(self) -> str:
        return self.order_number or str(self.id)

    __table_args__ = (
        {"comment": "Заказы на доставку"},
    )


class OrderCandidate(Base):
    """Кому был предложен заказ: исполнитель (канал) или конкретный курьер."""
    __tablename__ = "order_candidates"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    courier_id: Mapped[Optional[int]] = mapped_column(ForeignKey("couriers.id"), nullable=True)
    executor_id: Mapped[Optional[int]] = mapped_column(ForeignKey("executors.id"), nullable=True)
    chat_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    message_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    status: Mapped[CandidateStatus] = mapped_column(
        PgEnum(CandidateStatus, name="candidate_status_enum"), default=CandidateStatus.PENDING, nullable=False
    )
    readiness_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    readiness_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="candidates")
    courier: Mapped[Optional["Courier"]] = relationship("Courier")
    executor: Mapped[Optional["Executor"]] = relationship("Executor")

    __table_args__ = (
        Index("ix_candidates_order_status", "order_id", "status"),
        {"comment": "Кандидаты на заказ (рассылка)"},
    )


class AuditLog(Base):
    """Журнал действий. Только для истории, не для поиска ожидающих действий."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), nullable=False, index=True)
    section: Mapped[str] = mapped_column(String, nullable=False)
    level: Mapped[AuditLevel] = mapped_column(PgEnum(AuditLevel, name="audit_level_enum"), default=AuditLevel.INFO, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        {"comment": "Журнал аудита"},
    )
