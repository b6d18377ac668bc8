"""
Машина состояний доставки.

    searching -> assigned -> en_route -> [completing] -> completed
    assigned / en_route / completing -> searching (курьер отказался)

Каждый переход: проверка курьера, проверка статуса, затем условный UPDATE,
в котором курьер и статус проверяются ещё раз (защита от гонок и повторной доставки).
"""
import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Order, OrderStatus, Courier, TenantSettings
from services import audit, order_messages
from services.assignment import AssignmentCoordinator
from services.candidates import CandidateRegistry
from services.errors import PreconditionFailed, Unauthorized
from services.geofence import haversine_distance_m, resolve_radius, is_within_radius, has_coordinates
from services.messaging import MessageLifecycleManager
from services.order_store import OrderStore, transaction, utcnow
from services.payout import calculate_courier_payout

logger = logging.getLogger(__name__)


class LocationResult(str, enum.Enum):
    COMPLETED = "completed"
    TOO_FAR = "too_far"
    MISSING_COORDINATES = "missing_coordinates"


@dataclass
class LocationOutcome:
    result: LocationResult
    text: str
    distance_m: Optional[float] = None
    radius_m: Optional[int] = None

    @property
    def completed(self) -> bool:
        return self.result == LocationResult.COMPLETED

    @property
    def consumes_request(self) -> bool:
        # Без координат запрос оставляем: администратор может их исправить
        return self.result != LocationResult.MISSING_COORDINATES


@dataclass
class CompletionStep:
    alert: str
    location_required: bool = False
    payout: Optional[Decimal] = None


class StatusTransitionEngine:

    def __init__(self, lifecycle: MessageLifecycleManager, coordinator: AssignmentCoordinator):
        self.lifecycle = lifecycle
        self.coordinator = coordinator

    @staticmethod
    def _authorize(order: Order, courier: Optional[Courier]) -> Courier:
        if courier is None or order.courier_id != courier.id:
            raise Unauthorized(
                details="Order is assigned to another courier",
                order_id=order.id,
                courier_id=courier.id if courier else None,
            )
        return courier

    async def mark_en_route(self, session: AsyncSession, order: Order, courier: Optional[Courier]) -> str:
        courier = self._authorize(order, courier)
        if order.status == OrderStatus.EN_ROUTE:
            raise PreconditionFailed("🚗 Вы уже в пути", details="Order already en route", order_id=order.id, courier_id=courier.id)
        if order.status != OrderStatus.ASSIGNED:
            raise PreconditionFailed(details=f"Order status is {order.status.value}", order_id=order.id, courier_id=courier.id)

        now = utcnow()
        async with transaction(session, order_id=order.id, courier_id=courier.id):
            if not await OrderStore.try_transition(
                session, order.id,
                from_status=OrderStatus.ASSIGNED, to_status=OrderStatus.EN_ROUTE,
                actor_id=courier.id, en_route_at=now,
            ):
                raise PreconditionFailed(details="Order changed concurrently", order_id=order.id, courier_id=courier.id)
            await CandidateRegistry.stop_readiness_timers(session, order.id, now)
            audit.record(
                session,
                order.tenant_id,
                f"Курьер {courier.full_name} выехал с заказом #{order.display_number}",
                details={"order_id": order.id, "courier_id": courier.id, "action": "en_route"},
            )
        return "✅ Статус обновлен: В дороге"

    async def request_completion(
        self,
        session: AsyncSession,
        order: Order,
        courier: Optional[Courier],
        settings: TenantSettings,
    ) -> CompletionStep:
        """
        Кнопка «Выполнено». Без обязательной геолокации сразу completed,
        иначе en_route -> completing и запрос геолокации у курьера.
        """
        courier = self._authorize(order, courier)

        if order.status == OrderStatus.COMPLETING:
            if settings.require_location_on_completion:
                # Повторное нажатие: только повторяем запрос геолокации
                return CompletionStep(alert="📍 Отправьте ваше местоположение", location_required=True)
            payout = await self._finalize(session, order, courier, settings, from_status=OrderStatus.COMPLETING)
            return CompletionStep(alert="✅ Заказ завершен", payout=payout)

        if order.status != OrderStatus.EN_ROUTE:
            raise PreconditionFailed(
                "⚠️ Вы должны сначала выехать",
                details="Order must be en route before completion",
                order_id=order.id,
                courier_id=courier.id,
            )

        if settings.require_location_on_completion:
            async with transaction(session, order_id=order.id, courier_id=courier.id):
                if not await OrderStore.try_transition(
                    session, order.id,
                    from_status=OrderStatus.EN_ROUTE, to_status=OrderStatus.COMPLETING,
                    actor_id=courier.id,
                ):
                    raise PreconditionFailed(details="Order changed concurrently", order_id=order.id, courier_id=courier.id)
                audit.record(
                    session,
                    order.tenant_id,
                    f"Запрошена геолокация курьера {courier.full_name} для завершения заказа #{order.display_number}",
                    details={"order_id": order.id, "courier_id": courier.id, "action": "location_requested"},
                )
            return CompletionStep(alert="📍 Отправьте ваше местоположение", location_required=True)

        payout = await self._finalize(session, order, courier, settings, from_status=OrderStatus.EN_ROUTE)
        return CompletionStep(alert="✅ Заказ завершен", payout=payout)

    async def confirm_location(
        self,
        session: AsyncSession,
        order: Order,
        courier: Optional[Courier],
        settings: TenantSettings,
        latitude: float,
        longitude: float,
    ) -> LocationOutcome:
        """Геолокация курьера для заказа в статусе completing."""
        courier = self._authorize(order, courier)
        if order.status == OrderStatus.COMPLETED:
            raise PreconditionFailed("✅ Заказ уже завершен", details="Order already completed", order_id=order.id, courier_id=courier.id)
        if order.status != OrderStatus.COMPLETING:
            raise PreconditionFailed(
                "⚠️ Нажмите «Выполнено», чтобы завершить заказ",
                details=f"Order status is {order.status.value}",
                order_id=order.id,
                courier_id=courier.id,
            )

        if not has_coordinates(order.delivery_lat, order.delivery_lng):
            logger.warning("Order %s has no delivery coordinates", order.id)
            return LocationOutcome(LocationResult.MISSING_COORDINATES, order_messages.MISSING_COORDINATES_TEXT)

        distance = haversine_distance_m(latitude, longitude, order.delivery_lat, order.delivery_lng)
        radius = resolve_radius(settings.completion_radius_meters)

        if not is_within_radius(distance, radius):
            logger.info("Courier too far: order=%s, courier=%s, distance=%.1f, radius=%s", order.id, courier.id, distance, radius)
            async with transaction(session, order_id=order.id, courier_id=courier.id):
                if not await OrderStore.try_transition(
                    session, order.id,
                    from_status=OrderStatus.COMPLETING, to_status=OrderStatus.EN_ROUTE,
                    actor_id=courier.id,
                ):
                    # Заказ успел уйти из completing
                    raise PreconditionFailed(details="Order changed concurrently", order_id=order.id, courier_id=courier.id)
            return LocationOutcome(
                LocationResult.TOO_FAR,
                order_messages.format_too_far(distance, radius),
                distance_m=distance,
                radius_m=radius,
            )

        await self._finalize(session, order, courier, settings, from_status=OrderStatus.COMPLETING, distance_m=distance)
        return LocationOutcome(
            LocationResult.COMPLETED,
            order_messages.format_completion_confirmed(distance),
            distance_m=distance,
            radius_m=radius,
        )

    async def cancel(
        self,
        session: AsyncSession,
        order: Order,
        courier: Optional[Courier],
        settings: TenantSettings,
    ) -> str:
        return await self.coordinator.release(session, order, courier, settings)

    async def _finalize(
        self,
        session: AsyncSession,
        order: Order,
        courier: Courier,
        settings: TenantSettings,
        *,
        from_status: OrderStatus,
        distance_m: Optional[float] = None,
    ) -> Optional[Decimal]:
        """
        Переход в completed: выплата, остановка таймеров, отмена кандидатов,
        аудит; после коммита удаление всех сообщений заказа.
        """
        now = utcnow()
        payout = calculate_courier_payout(order)
        values = {"completed_at": now}
        # Самовывоз или нет зоны: выплату не трогаем
        if payout is not None:
            values["courier_payment_amount"] = payout

        async with transaction(session, order_id=order.id, courier_id=courier.id):
            if not await OrderStore.try_transition(
                session, order.id,
                from_status=from_status, to_status=OrderStatus.COMPLETED,
                actor_id=courier.id, **values,
            ):
                raise PreconditionFailed("✅ Заказ уже завершен", details="Order already completed", order_id=order.id, courier_id=courier.id)
            await CandidateRegistry.stop_readiness_timers(session, order.id, now)
            cancelled = await CandidateRegistry.cancel_all(session, order.id, now=now)
            details = {
                "order_id": order.id,
                "courier_id": courier.id,
                "action": "complete",
                "payout": str(payout) if payout is not None else None,
            }
            if distance_m is not None:
                details["distance_m"] = round(distance_m, 1)
            audit.record(
                session,
                order.tenant_id,
                f"Курьер {courier.full_name} завершил заказ #{order.display_number}",
                details=details,
            )

        order = await OrderStore.get_order(session, order.id)
        await self.lifecycle.clear_order(order, cancelled, settings.courier_bot_token, courier)
        logger.info("Order completed: id=%s, courier=%s, payout=%s", order.id, courier.id, payout)
        return payout
