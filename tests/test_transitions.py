from decimal import Decimal

import pytest

from conftest import DELIVERY_LAT, DELIVERY_LNG, point_north_of
from database.models import Courier, Order, OrderStatus, CandidateStatus
from services.db_ops import require_tenant_settings
from services.errors import PreconditionFailed, Unauthorized
from services.order_store import OrderStore
from services.transitions import LocationResult


async def load(session, world, order_id, courier_id=None):
    order = await OrderStore.get_order(session, order_id, world.tenant_id)
    courier = await session.get(Courier, courier_id or world.courier_id)
    settings = await require_tenant_settings(session, world.tenant_id)
    return order, courier, settings


async def test_en_route_stops_readiness_timers(session, world, make_order, transitions, load_order, load_candidates, count_audit):
    order_id = await make_order(OrderStatus.ASSIGNED, candidates=2, readiness_started_minutes_ago=5)
    order, courier, _ = await load(session, world, order_id)

    alert = await transitions.mark_en_route(session, order, courier)

    assert alert == "✅ Статус обновлен: В дороге"
    stored = await load_order(order_id)
    assert stored.status == OrderStatus.EN_ROUTE
    assert stored.en_route_at is not None
    for candidate in await load_candidates(order_id):
        assert candidate.readiness_started_at is None
        assert candidate.readiness_minutes == 5
    assert await count_audit("en_route") == 1


async def test_en_route_twice_is_rejected_without_changes(session, world, make_order, transitions, load_order, count_audit):
    order_id = await make_order(OrderStatus.EN_ROUTE)
    order, courier, _ = await load(session, world, order_id)

    with pytest.raises(PreconditionFailed) as exc_info:
        await transitions.mark_en_route(session, order, courier)

    assert exc_info.value.alert == "🚗 Вы уже в пути"
    assert (await load_order(order_id)).status == OrderStatus.EN_ROUTE
    assert await count_audit() == 0


async def test_foreign_courier_cannot_move_order(session, world, make_order, transitions, load_order):
    order_id = await make_order(OrderStatus.ASSIGNED)
    order, other, _ = await load(session, world, order_id, world.other_id)

    with pytest.raises(Unauthorized):
        await transitions.mark_en_route(session, order, other)

    assert (await load_order(order_id)).status == OrderStatus.ASSIGNED


async def test_complete_before_leaving_is_rejected(session, world, make_order, transitions, load_order):
    order_id = await make_order(OrderStatus.ASSIGNED)
    order, courier, settings = await load(session, world, order_id)

    with pytest.raises(PreconditionFailed) as exc_info:
        await transitions.request_completion(session, order, courier, settings)

    assert exc_info.value.alert == "⚠️ Вы должны сначала выехать"
    assert exc_info.value.status == 200
    assert (await load_order(order_id)).status == OrderStatus.ASSIGNED


async def test_complete_without_location(session, world, make_order, transitions, messenger, load_order, load_candidates, count_audit):
    order_id = await make_order(
        OrderStatus.EN_ROUTE, branch_message_id=654, courier_message_id=321, candidates=1,
    )
    order, courier, settings = await load(session, world, order_id)

    step = await transitions.request_completion(session, order, courier, settings)

    assert step.alert == "✅ Заказ завершен"
    assert not step.location_required
    assert step.payout == Decimal("65")
    stored = await load_order(order_id)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.completed_at is not None
    assert stored.courier_payment_amount == Decimal("65")
    assert [c.status for c in await load_candidates(order_id)] == [CandidateStatus.CANCELLED]
    assert messenger.was_deleted(world.branch_chat_id, 654)
    assert messenger.was_deleted(world.executor_chat_id, 900)
    assert messenger.was_deleted(world.courier_tg, 321)
    assert await count_audit("complete") == 1


async def test_complete_without_zone_keeps_payout(session, world, make_order, transitions, load_order):
    order_id = await make_order(OrderStatus.EN_ROUTE, zone_id=None, courier_payment_amount=Decimal("42"))
    order, courier, settings = await load(session, world, order_id)

    step = await transitions.request_completion(session, order, courier, settings)

    assert step.payout is None
    assert (await load_order(order_id)).courier_payment_amount == Decimal("42")


async def test_complete_with_required_location_moves_to_completing(session, world, make_order, transitions, set_settings, load_order, count_audit):
    await set_settings(require_location_on_completion=True)
    order_id = await make_order(OrderStatus.EN_ROUTE)
    order, courier, settings = await load(session, world, order_id)

    step = await transitions.request_completion(session, order, courier, settings)

    assert step.location_required
    assert (await load_order(order_id)).status == OrderStatus.COMPLETING
    assert await count_audit("location_requested") == 1


async def test_repeated_complete_while_completing_reprompts(session, world, make_order, transitions, set_settings, load_order):
    await set_settings(require_location_on_completion=True)
    order_id = await make_order(OrderStatus.COMPLETING)
    order, courier, settings = await load(session, world, order_id)

    step = await transitions.request_completion(session, order, courier, settings)

    assert step.location_required
    assert (await load_order(order_id)).status == OrderStatus.COMPLETING


async def test_completing_order_finishes_when_location_no_longer_required(session, world, make_order, transitions, load_order):
    order_id = await make_order(OrderStatus.COMPLETING)
    order, courier, settings = await load(session, world, order_id)

    step = await transitions.request_completion(session, order, courier, settings)

    assert not step.location_required
    assert (await load_order(order_id)).status == OrderStatus.COMPLETED


async def test_location_inside_radius_completes(session, world, make_order, transitions, load_order, count_audit):
    order_id = await make_order(OrderStatus.COMPLETING)
    order, courier, settings = await load(session, world, order_id)
    lat, lng = point_north_of(DELIVERY_LAT, DELIVERY_LNG, 99)

    outcome = await transitions.confirm_location(session, order, courier, settings, lat, lng)

    assert outcome.result == LocationResult.COMPLETED
    assert outcome.consumes_request
    assert outcome.distance_m == pytest.approx(99, abs=0.01)
    assert "99 м" in outcome.text
    stored = await load_order(order_id)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.courier_payment_amount == Decimal("65")
    assert await count_audit("complete") == 1


async def test_location_outside_radius_returns_to_en_route(session, world, make_order, transitions, load_order, count_audit):
    order_id = await make_order(OrderStatus.COMPLETING)
    order, courier, settings = await load(session, world, order_id)
    lat, lng = point_north_of(DELIVERY_LAT, DELIVERY_LNG, 101)

    outcome = await transitions.confirm_location(session, order, courier, settings, lat, lng)

    assert outcome.result == LocationResult.TOO_FAR
    assert outcome.radius_m == 100
    assert "101 метров" in outcome.text
    stored = await load_order(order_id)
    assert stored.status == OrderStatus.EN_ROUTE
    assert stored.courier_payment_amount is None
    assert await count_audit("complete") == 0


async def test_custom_radius(session, world, make_order, transitions, set_settings, load_order):
    await set_settings(completion_radius_meters=500)
    order_id = await make_order(OrderStatus.COMPLETING)
    order, courier, settings = await load(session, world, order_id)
    lat, lng = point_north_of(DELIVERY_LAT, DELIVERY_LNG, 450)

    outcome = await transitions.confirm_location(session, order, courier, settings, lat, lng)

    assert outcome.completed
    assert (await load_order(order_id)).status == OrderStatus.COMPLETED


async def test_order_without_coordinates_stays_completing(session, world, make_order, transitions, load_order):
    order_id = await make_order(OrderStatus.COMPLETING, delivery_lat=None, delivery_lng=None)
    order, courier, settings = await load(session, world, order_id)

    outcome = await transitions.confirm_location(session, order, courier, settings, DELIVERY_LAT, DELIVERY_LNG)

    assert outcome.result == LocationResult.MISSING_COORDINATES
    assert not outcome.consumes_request
    assert (await load_order(order_id)).status == OrderStatus.COMPLETING


async def test_location_for_completed_order_is_rejected(session, world, make_order, transitions):
    order_id = await make_order(OrderStatus.COMPLETED)
    order, courier, settings = await load(session, world, order_id)

    with pytest.raises(PreconditionFailed):
        await transitions.confirm_location(session, order, courier, settings, DELIVERY_LAT, DELIVERY_LNG)


async def test_location_outside_radius_after_order_changed(session, session_maker, world, make_order, transitions, load_order):
    order_id = await make_order(OrderStatus.COMPLETING)
    order, courier, settings = await load(session, world, order_id)
    async with session_maker() as other:
        stale = await other.get(Order, order_id)
        stale.status = OrderStatus.COMPLETED
        await other.commit()
    lat, lng = point_north_of(DELIVERY_LAT, DELIVERY_LNG, 101)

    with pytest.raises(PreconditionFailed) as exc_info:
        await transitions.confirm_location(session, order, courier, settings, lat, lng)

    assert exc_info.value.details == "Order changed concurrently"
    assert (await load_order(order_id)).status == OrderStatus.COMPLETED


async def test_own_courier_completion_pays_zone_rate(session, world, make_order, transitions, load_order):
    order_id = await make_order(OrderStatus.EN_ROUTE, executor_id=None, distance_km=7.8)
    order, courier, settings = await load(session, world, order_id)

    step = await transitions.request_completion(session, order, courier, settings)

    assert step.payout == Decimal("50")
    assert (await load_order(order_id)).courier_payment_amount == Decimal("50")


async def test_pickup_completion_keeps_payout(session, world, make_order, transitions, load_order):
    order_id = await make_order(OrderStatus.EN_ROUTE, delivery_type="pickup")
    order, courier, settings = await load(session, world, order_id)

    step = await transitions.request_completion(session, order, courier, settings)

    assert step.payout is None
    stored = await load_order(order_id)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.courier_payment_amount is None
