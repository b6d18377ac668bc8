"""
Расчёт выплаты курьеру за заказ.

Платим только за доставку (самовывоз -> None). Без зоны -> None.
Свой курьер: courier_payment зоны, иначе 0.
Исполнитель: courier_payment, иначе price, иначе 0; если у исполнителя включён
расчёт по км и ставка > 0, добавляется надбавка: расстояние (минимум 1 км)
округляется до шага градации, снова не меньше 1 км, умножается на ставку
и округляется до целого.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from database.models import DELIVERY_TYPE_DELIVERY, Executor, Order
from config import config

logger = logging.getLogger(__name__)

MIN_BILLED_KM = Decimal("1")


def _round_half_up(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def _graduation_km(executor: Executor) -> Decimal:
    meters = executor.km_graduation_meters
    if meters is None:
        meters = config.DEFAULT_KM_GRADUATION_METERS
    return Decimal(meters) / Decimal(1000)


def billed_distance_km(distance_km: float, graduation_km: Decimal) -> Decimal:
    calc = max(Decimal(str(distance_km)), MIN_BILLED_KM)
    if graduation_km > 0:
        calc = _round_half_up(calc / graduation_km) * graduation_km
        calc = max(calc, MIN_BILLED_KM)
    return calc


def km_surcharge(executor: Optional[Executor], distance_km: Optional[float]) -> Decimal:
    if executor is None or not executor.km_calculation_enabled or distance_km is None:
        return Decimal(0)
    rate = Decimal(executor.price_per_km) if executor.price_per_km is not None else Decimal(0)
    if rate <= 0:
        return Decimal(0)

    calc = billed_distance_km(distance_km, _graduation_km(executor))
    surcharge = _round_half_up(calc * rate)
    logger.debug(
        "Payout surcharge: executor=%s, distance=%s, billed=%s, rate=%s, surcharge=%s",
        executor.id, distance_km, calc, rate, surcharge
    )
    return surcharge


def calculate_courier_payout(order: Order) -> Optional[Decimal]:
    """
    Выплата курьеру за заказ.

    Ожидает загруженные order.zone и order.executor.

    Returns:
        Decimal или None (самовывоз или зона не найдена: поле выплаты у заказа тогда не трогаем)
    """
    if order.delivery_type != DELIVERY_TYPE_DELIVERY:
        return None
    zone = order.zone
    if zone is None:
        return None

    if order.executor_id is None:
        return Decimal(zone.courier_payment) if zone.courier_payment is not None else Decimal(0)

    base = zone.courier_payment if zone.courier_payment is not None else zone.price
    payout = Decimal(base) if base is not None else Decimal(0)
    return payout + km_surcharge(order.executor, order.distance_km)
