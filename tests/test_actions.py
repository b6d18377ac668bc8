import pytest

from handlers.actions import ActionKind, CourierAction, parse_callback_data


@pytest.mark.parametrize("data, expected", [
    ("accept_order_12", CourierAction(ActionKind.ACCEPT, 12)),
    ("en_route_7", CourierAction(ActionKind.EN_ROUTE, 7)),
    ("complete_order_7", CourierAction(ActionKind.COMPLETE, 7)),
    ("complete_7", CourierAction(ActionKind.COMPLETE, 7)),
    ("cancel_order_99", CourierAction(ActionKind.CANCEL, 99)),
])
def test_recognized_buttons(data, expected):
    assert parse_callback_data(data) == expected


@pytest.mark.parametrize("data", [
    None,
    "",
    "en_route_",
    "en_route_abc",
    "complete_order_-1",
    "courier:select_orders",
    "cancel_12",
])
def test_unrecognized_buttons(data):
    assert parse_callback_data(data) is None
