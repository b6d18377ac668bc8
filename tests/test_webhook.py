import itertools
from decimal import Decimal

import pytest
from aiohttp.test_utils import TestClient, TestServer

from config import config
from conftest import DELIVERY_LAT, DELIVERY_LNG, point_north_of
from database.models import OrderStatus
from server import create_app
from services.order_messages import LOCATION_REQUEST_TEXT

_update_ids = itertools.count(1)
_callback_ids = itertools.count(1)

MESSAGE_DATE = 1700000000


def user(user_id: int) -> dict:
    return {"id": user_id, "is_bot": False, "first_name": "Test"}


def callback_update(user_id: int, data: str, *, chat_id=None, message_id: int = 1) -> dict:
    chat_id = chat_id or user_id
    return {
        "update_id": next(_update_ids),
        "callback_query": {
            "id": str(next(_callback_ids)),
            "from": user(user_id),
            "chat_instance": "test",
            "data": data,
            "message": {
                "message_id": message_id,
                "date": MESSAGE_DATE,
                "chat": {"id": chat_id, "type": "private" if chat_id > 0 else "supergroup"},
                "text": "заказ",
            },
        },
    }


def location_update(user_id: int, lat: float, lng: float) -> dict:
    return {
        "update_id": next(_update_ids),
        "message": {
            "message_id": next(_update_ids),
            "date": MESSAGE_DATE,
            "chat": {"id": user_id, "type": "private"},
            "from": user(user_id),
            "location": {"latitude": lat, "longitude": lng},
        },
    }


def text_update(user_id: int, text: str) -> dict:
    return {
        "update_id": next(_update_ids),
        "message": {
            "message_id": next(_update_ids),
            "date": MESSAGE_DATE,
            "chat": {"id": user_id, "type": "private"},
            "from": user(user_id),
            "text": text,
        },
    }


@pytest.fixture
async def client(dispatcher, session_maker, messenger):
    app = create_app(dispatcher, session_maker, messenger)
    async with TestClient(TestServer(app)) as client:
        yield client


@pytest.fixture
def post_courier(client, world):
    async def _post(payload):
        response = await client.post(f"/webhook/{world.tenant_id}/courier", json=payload)
        return response.status, await response.json()
    return _post


async def test_health(client, world):
    response = await client.get("/health")
    assert response.status == 200
    assert await response.json() == {"ok": True, "db": True}


async def test_invalid_json(client, world):
    response = await client.post(
        f"/webhook/{world.tenant_id}/courier", data=b"{not json", headers={"Content-Type": "application/json"},
    )
    assert response.status == 400
    assert (await response.json())["error"] == "Invalid JSON"


async def test_invalid_update(post_courier):
    status, body = await post_courier({"update_id": "nope", "message": 5})
    assert status == 400
    assert body["error"] == "Invalid update"


async def test_unknown_tenant_has_no_bot(client, world):
    response = await client.post(f"/webhook/{world.tenant_id + 100}/courier", json=text_update(1, "hi"))
    assert response.status == 500
    assert (await response.json())["details"] == "Bot token not found"


async def test_secret_mismatch(client, world, monkeypatch):
    monkeypatch.setattr(config, "WEBHOOK_SECRET", "s3cret")

    response = await client.post(f"/webhook/{world.tenant_id}/courier", json=text_update(1, "hi"))
    assert response.status == 401

    response = await client.post(
        f"/webhook/{world.tenant_id}/courier",
        json=text_update(1, "hi"),
        headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
    )
    assert response.status == 200


async def test_plain_text_is_ignored(post_courier, world):
    status, body = await post_courier(text_update(world.courier_tg, "привет"))
    assert status == 200
    assert body == {"ok": True}


async def test_unknown_button(post_courier, world, messenger):
    status, body = await post_courier(callback_update(world.courier_tg, "courier:select_orders"))
    assert status == 200
    assert body["message"] == "Unknown action"
    assert messenger.answers == ["Действие устарело"]


async def test_missing_order(post_courier, world):
    status, body = await post_courier(callback_update(world.courier_tg, "en_route_424242"))
    assert status == 404
    assert body["error"] == "❌ Заказ не найден"


async def test_foreign_courier(post_courier, world, make_order, load_order):
    order_id = await make_order(OrderStatus.ASSIGNED)

    status, body = await post_courier(callback_update(world.other_tg, f"en_route_{order_id}"))

    assert status == 403
    assert (await load_order(order_id)).status == OrderStatus.ASSIGNED


async def test_complete_before_en_route(post_courier, world, make_order, messenger, load_order):
    order_id = await make_order(OrderStatus.ASSIGNED)

    status, body = await post_courier(callback_update(world.courier_tg, f"complete_order_{order_id}"))

    assert status == 200
    assert body["ok"] is True
    assert messenger.answers == ["⚠️ Вы должны сначала выехать"]
    assert (await load_order(order_id)).status == OrderStatus.ASSIGNED


async def test_en_route_replay(post_courier, world, make_order, count_audit, load_order):
    order_id = await make_order(OrderStatus.ASSIGNED)

    first = await post_courier(callback_update(world.courier_tg, f"en_route_{order_id}"))
    second = await post_courier(callback_update(world.courier_tg, f"en_route_{order_id}"))

    assert first == (200, {"ok": True, "message": "✅ Статус обновлен: В дороге", "order_id": order_id})
    assert second[0] == 200
    assert second[1]["ok"] is True
    assert (await load_order(order_id)).status == OrderStatus.EN_ROUTE
    assert await count_audit("en_route") == 1


async def test_complete_without_location(post_courier, world, make_order, load_order):
    order_id = await make_order(OrderStatus.EN_ROUTE)

    status, body = await post_courier(callback_update(world.courier_tg, f"complete_{order_id}"))

    assert status == 200
    assert body["message"] == "✅ Заказ завершен"
    assert Decimal(body["payout"]) == Decimal("65")
    assert (await load_order(order_id)).status == OrderStatus.COMPLETED


async def test_location_flow(post_courier, world, make_order, set_settings, messenger, load_order, count_audit):
    await set_settings(require_location_on_completion=True)
    order_id = await make_order(OrderStatus.EN_ROUTE)
    complete = f"complete_order_{order_id}"

    status, body = await post_courier(callback_update(world.courier_tg, complete))
    assert status == 200
    assert body["location_required"] is True
    assert (await load_order(order_id)).status == OrderStatus.COMPLETING
    prompts = [m for m in messenger.sent_to(world.courier_tg) if m.text == LOCATION_REQUEST_TEXT]
    assert len(prompts) == 1

    far = point_north_of(DELIVERY_LAT, DELIVERY_LNG, 101)
    status, body = await post_courier(location_update(world.courier_tg, *far))
    assert status == 200
    assert body["result"] == "too_far"
    assert (await load_order(order_id)).status == OrderStatus.EN_ROUTE
    assert messenger.was_deleted(world.courier_tg, prompts[0].message_id)

    # Запрос израсходован: без нового «Выполнено» геолокация не принимается
    status, body = await post_courier(location_update(world.courier_tg, DELIVERY_LAT, DELIVERY_LNG))
    assert body["message"] == "No active location request"

    await post_courier(callback_update(world.courier_tg, complete))
    near = point_north_of(DELIVERY_LAT, DELIVERY_LNG, 99)
    status, body = await post_courier(location_update(world.courier_tg, *near))
    assert status == 200
    assert body["result"] == "completed"
    assert body["distance_m"] == pytest.approx(99, abs=0.1)

    order = await load_order(order_id)
    assert order.status == OrderStatus.COMPLETED
    assert order.courier_payment_amount == 65

    status, body = await post_courier(location_update(world.courier_tg, *near))
    assert status == 200
    assert body["message"] == "No active location request"
    assert await count_audit("complete") == 1


async def test_repeated_complete_replaces_prompt(post_courier, world, make_order, set_settings, messenger):
    await set_settings(require_location_on_completion=True)
    order_id = await make_order(OrderStatus.EN_ROUTE)

    await post_courier(callback_update(world.courier_tg, f"complete_order_{order_id}"))
    await post_courier(callback_update(world.courier_tg, f"complete_order_{order_id}"))

    prompts = [m for m in messenger.sent_to(world.courier_tg) if m.text == LOCATION_REQUEST_TEXT]
    assert len(prompts) == 2
    assert messenger.was_deleted(world.courier_tg, prompts[0].message_id)


async def test_location_from_unknown_user(post_courier):
    status, body = await post_courier(location_update(999999, DELIVERY_LAT, DELIVERY_LNG))
    assert status == 200
    assert body["message"] == "Courier not found"


async def test_cancel_rebroadcasts(post_courier, world, make_order, messenger, load_order):
    order_id = await make_order(OrderStatus.EN_ROUTE, courier_message_id=321)

    status, body = await post_courier(callback_update(world.courier_tg, f"cancel_order_{order_id}"))

    assert status == 200
    assert body["message"] == "Заказ отменен. Курьер снят с заказа."
    order = await load_order(order_id)
    assert order.status == OrderStatus.SEARCHING
    assert order.courier_id is None
    assert messenger.was_deleted(world.courier_tg, 321)
    assert len(messenger.sent_to(world.branch_chat_id)) == 1
    assert len(messenger.sent_to(world.executor_chat_id)) == 1


async def test_cancel_clears_pending_location(post_courier, world, make_order, set_settings, load_order):
    await set_settings(require_location_on_completion=True)
    order_id = await make_order(OrderStatus.EN_ROUTE)

    await post_courier(callback_update(world.courier_tg, f"complete_order_{order_id}"))
    status, _ = await post_courier(callback_update(world.courier_tg, f"cancel_order_{order_id}"))
    assert status == 200
    assert (await load_order(order_id)).status == OrderStatus.SEARCHING

    status, body = await post_courier(location_update(world.courier_tg, DELIVERY_LAT, DELIVERY_LNG))
    assert body["message"] == "No active location request"


async def test_accept_from_branch_group(client, world, make_order, messenger, load_order):
    order_id = await make_order(OrderStatus.SEARCHING, branch_message_id=654)

    response = await client.post(
        f"/webhook/{world.tenant_id}/branch/{world.branch_id}",
        json=callback_update(world.courier_tg, f"accept_order_{order_id}", chat_id=world.branch_chat_id, message_id=654),
    )

    assert response.status == 200
    assert (await response.json())["message"] == "✅ Заказ принят"
    order = await load_order(order_id)
    assert order.status == OrderStatus.ASSIGNED
    assert order.courier_id == world.courier_id
    assert messenger.was_deleted(world.branch_chat_id, 654)
    assert len(messenger.sent_to(world.courier_tg)) == 1


async def test_accept_by_stranger(client, world, make_order, load_order):
    order_id = await make_order(OrderStatus.SEARCHING)

    response = await client.post(
        f"/webhook/{world.tenant_id}/executor/{world.executor_id}",
        json=callback_update(999999, f"accept_order_{order_id}", chat_id=world.executor_chat_id),
    )

    assert response.status == 403
    assert (await load_order(order_id)).status == OrderStatus.SEARCHING
