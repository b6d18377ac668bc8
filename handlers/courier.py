"""
Кнопки курьера и геолокация.

Каждый хендлер возвращает GatewayReply, из него webhook строит HTTP-ответ.
Бизнес-отказы (чужой заказ, не тот статус) приходят исключениями из services.errors
и обрабатываются в handlers/errors.py.
"""
import logging
from typing import Optional

from aiogram import Bot, Router, types
from aiogram.fsm.context import FSMContext
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Courier
from handlers.actions import ActionKind, CourierAction, CourierActionFilter, GatewayReply, LocationFilter, LocationShared
from keyboards.courier_kbs import get_location_request_kb, get_remove_kb
from services.assignment import AssignmentCoordinator
from services.db_ops import require_tenant_settings
from services.errors import NotFound, PreconditionFailed
from services.messaging import MessageLifecycleManager
from services.order_messages import LOCATION_REQUEST_TEXT
from services.order_store import OrderStore, utcnow
from services.pending_actions import PendingActions
from services.telegram_utils import TelegramMessenger
from services.transitions import StatusTransitionEngine
from states.courier_states import CourierState

logger = logging.getLogger(__name__)

router = Router()


def _chat_id(callback: types.CallbackQuery, courier: Optional[Courier]) -> int:
    if callback.message is not None:
        return callback.message.chat.id
    return courier.telegram_user_id if courier else callback.from_user.id


@router.callback_query(CourierActionFilter(ActionKind.ACCEPT))
async def courier_accept_order(
    callback: types.CallbackQuery,
    action: CourierAction,
    session: AsyncSession,
    courier: Optional[Courier],
    tenant_id: int,
    bot: Bot,
    coordinator: AssignmentCoordinator,
    messenger: TelegramMessenger,
) -> GatewayReply:
    """Принять заказ из группы филиала, канала исполнителя или личного предложения."""
    order = await OrderStore.get_order(session, action.order_id, tenant_id)
    settings = await require_tenant_settings(session, tenant_id)
    alert = await coordinator.accept(
        session, order, courier, settings,
        chat_id=callback.message.chat.id if callback.message else None,
        message_id=callback.message.message_id if callback.message else None,
    )
    await messenger.answer_callback(bot.token, callback.id, alert)
    return GatewayReply.ok(alert, order_id=order.id)


@router.callback_query(CourierActionFilter(ActionKind.EN_ROUTE))
async def courier_en_route(
    callback: types.CallbackQuery,
    action: CourierAction,
    session: AsyncSession,
    courier: Optional[Courier],
    tenant_id: int,
    bot: Bot,
    transitions: StatusTransitionEngine,
    messenger: TelegramMessenger,
) -> GatewayReply:
    order = await OrderStore.get_order(session, action.order_id, tenant_id)
    alert = await transitions.mark_en_route(session, order, courier)
    await messenger.answer_callback(bot.token, callback.id, alert)
    return GatewayReply.ok(alert, order_id=order.id)


@router.callback_query(CourierActionFilter(ActionKind.COMPLETE))
async def courier_complete_order(
    callback: types.CallbackQuery,
    action: CourierAction,
    state: FSMContext,
    session: AsyncSession,
    courier: Optional[Courier],
    tenant_id: int,
    bot: Bot,
    transitions: StatusTransitionEngine,
    lifecycle: MessageLifecycleManager,
    messenger: TelegramMessenger,
) -> GatewayReply:
    """«Выполнено»: завершить сразу или запросить геолокацию."""
    order = await OrderStore.get_order(session, action.order_id, tenant_id)
    settings = await require_tenant_settings(session, tenant_id)
    step = await transitions.request_completion(session, order, courier, settings)

    if step.location_required:
        pending = PendingActions(state)
        previous = await pending.peek()
        chat_id = _chat_id(callback, courier)
        # Одна подсказка на курьера: старую удаляем
        prompt_id = await lifecycle.replace(
            bot.token,
            chat_id,
            previous.prompt_message_id if previous else None,
            LOCATION_REQUEST_TEXT,
            reply_markup=get_location_request_kb(),
        )
        await pending.request_location(order.id, prompt_id, utcnow())
        logger.info("Location requested: order=%s, courier=%s, prompt=%s", order.id, order.courier_id, prompt_id)
        await messenger.answer_callback(bot.token, callback.id, step.alert)
        return GatewayReply.ok(step.alert, order_id=order.id, location_required=True)

    await messenger.answer_callback(bot.token, callback.id, step.alert)
    return GatewayReply.ok(
        step.alert,
        order_id=order.id,
        payout=str(step.payout) if step.payout is not None else None,
    )


@router.callback_query(CourierActionFilter(ActionKind.CANCEL))
async def courier_cancel_order(
    callback: types.CallbackQuery,
    action: CourierAction,
    state: FSMContext,
    session: AsyncSession,
    courier: Optional[Courier],
    tenant_id: int,
    bot: Bot,
    transitions: StatusTransitionEngine,
    lifecycle: MessageLifecycleManager,
    messenger: TelegramMessenger,
) -> GatewayReply:
    """Курьер отказывается от заказа, заказ возвращается в поиск."""
    order = await OrderStore.get_order(session, action.order_id, tenant_id)
    settings = await require_tenant_settings(session, tenant_id)
    alert = await transitions.cancel(session, order, courier, settings)

    cleared = await PendingActions(state).clear(order.id)
    if cleared is not None:
        await lifecycle.retire(bot.token, _chat_id(callback, courier), cleared.prompt_message_id)

    await messenger.answer_callback(bot.token, callback.id, alert)
    return GatewayReply.ok(alert, order_id=order.id)


@router.message(LocationFilter(), CourierState.awaiting_location)
async def courier_location(
    message: types.Message,
    location: LocationShared,
    state: FSMContext,
    session: AsyncSession,
    courier: Optional[Courier],
    tenant_id: int,
    bot: Bot,
    transitions: StatusTransitionEngine,
    lifecycle: MessageLifecycleManager,
    messenger: TelegramMessenger,
) -> GatewayReply:
    """Геолокация в ответ на запрос подтверждения доставки."""
    if courier is None:
        return GatewayReply.ok("Courier not found")

    pending = PendingActions(state)
    request = await pending.current(utcnow())
    if request is None:
        return GatewayReply.ok("No active location request")

    try:
        order = await OrderStore.get_order(session, request.order_id, tenant_id)
        settings = await require_tenant_settings(session, tenant_id)
        outcome = await transitions.confirm_location(
            session, order, courier, settings, location.latitude, location.longitude
        )
    except (NotFound, PreconditionFailed):
        # Запрос больше не актуален (заказ завершён, снят или архивирован)
        await pending.clear(request.order_id)
        await lifecycle.retire(bot.token, message.chat.id, request.prompt_message_id)
        raise

    reply_markup = None
    if outcome.consumes_request:
        await pending.clear(order.id)
        await lifecycle.retire(bot.token, message.chat.id, request.prompt_message_id)
        reply_markup = get_remove_kb()

    await messenger.send_message(bot.token, message.chat.id, outcome.text, reply_markup=reply_markup, parse_mode=None)
    return GatewayReply.ok(
        outcome.text,
        order_id=order.id,
        result=outcome.result.value,
        distance_m=round(outcome.distance_m, 1) if outcome.distance_m is not None else None,
    )
