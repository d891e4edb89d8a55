import pytest
from cravecrafted.common.custom_exceptions import OrderStateError, OrderValidationError
from cravecrafted.orders.status_machine import (
    check_status_update, ensure_cancellable, ensure_deletable, get_tracking_stage, history_matches_status,
    is_cancellable, is_deletable, set_subscription_status, transition,
)
from cravecrafted.orders.utils import (
    advance_billing_date, canonical_payment_method, card_token, recurrence_interval, subscription_cancel_at,
)
from cravecrafted.schema.full_schema import OrderStatus, Orders, SubscriptionStatus
from datetime import datetime, timezone


def new_order(status=OrderStatus.PENDING.value, payment_method="card", **kw) -> Orders:
    order = Orders(user_id=1, shipping_address={}, payment_method=payment_method,
                   payment_type="online", total_price=2000, **kw)
    transition(order, OrderStatus.PENDING.value, note="Order placed", actor="test")
    if status != OrderStatus.PENDING.value:
        transition(order, status, actor="test")
    return order


def test_transition_appends_history_and_sets_status():
    order = new_order()
    transition(order, OrderStatus.PAYMENT_CONFIRMED.value, note="paid", actor="gateway")

    assert order.status == OrderStatus.PAYMENT_CONFIRMED.value
    assert [e.status for e in order.status_history] == ["Pending", "Payment_Confirmed"]
    assert order.status_history[-1].note == "paid"
    assert order.status_history[-1].actor == "gateway"
    assert history_matches_status(order)


def test_transition_does_not_validate_successor():
    order = new_order(OrderStatus.DELIVERED.value)
    transition(order, OrderStatus.PENDING.value)
    assert order.status == OrderStatus.PENDING.value


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        transition(new_order(), "Teleported")


def test_delivered_cod_order_is_marked_paid():
    order = new_order(payment_method="cod")
    transition(order, OrderStatus.DELIVERED.value, actor="admin")

    assert order.is_delivered is True
    assert order.delivered_at is not None
    assert order.is_paid is True
    assert order.payment_result["amount"] == 2000
    assert order.payment_result["status"] == "collected"


def test_delivered_card_order_keeps_payment_fields():
    order = new_order(payment_method="card")
    transition(order, OrderStatus.DELIVERED.value)
    assert order.is_delivered is True
    assert order.is_paid is False


def test_cancelled_records_who_and_why():
    order = new_order()
    transition(order, OrderStatus.CANCELLED.value, note="changed my mind", actor="buyer:x", user_id=7)
    assert order.cancelled_at is not None
    assert order.cancelled_by == 7
    assert order.cancellation_reason == "changed my mind"


@pytest.mark.parametrize("status,stage,on_path", [
    ("Pending", 0, True),
    ("Payment_Confirmed", 1, True),
    ("Ready_to_Ship", 3, True),
    ("Delivered", 6, True),
    ("Cancelled", 0, False),
    ("Payment_Failed", 0, False),
])
def test_tracking_stage(status, stage, on_path):
    view = get_tracking_stage(status)
    assert view["current_stage"] == stage
    assert view["on_happy_path"] is on_path
    assert len(view["stages"]) == 7
    assert view["stages"][stage]["current"] is True
    assert all(s["completed"] for s in view["stages"][: stage + 1])
    assert not any(s["completed"] for s in view["stages"][stage + 1:])


@pytest.mark.parametrize("status", ["Shipped", "Out_for_Delivery", "Delivered", "Cancelled", "Refunded"])
def test_courier_and_terminal_orders_are_not_cancellable(status):
    order = new_order(status)
    assert not is_cancellable(order)
    with pytest.raises(OrderStateError):
        ensure_cancellable(order)


@pytest.mark.parametrize("status,deletable", [
    ("Cancelled", True), ("Payment_Failed", True), ("Refunded", True),
    ("Pending", False), ("Processing", False), ("Shipped", False), ("Delivered", False),
])
def test_deletable_statuses(status, deletable):
    order = new_order(status)
    assert is_deletable(order) is deletable
    if not deletable:
        with pytest.raises(OrderStateError):
            ensure_deletable(order)


def test_check_status_update_rules():
    processing = new_order(OrderStatus.PROCESSING.value)
    assert check_status_update(processing, "Shipped") == "Shipped"

    with pytest.raises(OrderValidationError):
        check_status_update(processing, "shipped")
    with pytest.raises(OrderStateError):
        check_status_update(processing, "Processing")
    with pytest.raises(OrderStateError):
        check_status_update(new_order(OrderStatus.DELIVERED.value), "Processing")
    with pytest.raises(OrderStateError):
        check_status_update(new_order(OrderStatus.SHIPPED.value), "Cancelled")
    with pytest.raises(OrderStateError):
        check_status_update(processing, "Refunded")


def test_subscription_status_machine():
    order = new_order(is_subscription=True, subscription_status=SubscriptionStatus.ACTIVE.value)
    order.next_billing_date = datetime(2030, 1, 1, tzinfo=timezone.utc)

    set_subscription_status(order, "paused")
    set_subscription_status(order, "active")
    set_subscription_status(order, "cancelled")
    assert order.subscription_status == "cancelled"
    assert order.next_billing_date is None
    # pausing never touches the order status
    assert order.status == OrderStatus.PENDING.value

    with pytest.raises(OrderStateError):
        set_subscription_status(order, "active")


def test_subscription_status_requires_subscription():
    with pytest.raises(OrderStateError):
        set_subscription_status(new_order(), "paused")


@pytest.mark.parametrize("raw,expected", [
    ("stripe", ("card", "online")),
    ("Credit Card", ("card", "online")),
    ("COD", ("cod", "cash_on_delivery")),
    ("cash-on-delivery", ("cod", "cash_on_delivery")),
])
def test_canonical_payment_method(raw, expected):
    assert canonical_payment_method(raw) == expected


def test_unknown_payment_method_is_rejected():
    with pytest.raises(OrderValidationError):
        canonical_payment_method("paypal")


def test_card_tokens():
    assert card_token("4000 0000 0000 0002") == "pm_card_chargeDeclined"
    assert card_token("4242424242424242") == "pm_card_visa"
    assert card_token("4111111111111111") == "pm_card_visa"


@pytest.mark.parametrize("recurrence,cycle,expected", [
    ("weekly", 1, ("week", 1)),
    ("biweekly", 1, ("week", 2)),
    ("monthly", 1, ("month", 1)),
    ("quarterly", 1, ("month", 3)),
    ("monthly", 2, ("month", 2)),
])
def test_recurrence_interval(recurrence, cycle, expected):
    assert recurrence_interval(recurrence, cycle) == expected


def test_billing_dates():
    start = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)
    assert advance_billing_date(start, "monthly") == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)
    assert advance_billing_date(start, "biweekly") == datetime(2026, 2, 14, 12, 0, tzinfo=timezone.utc)
    assert subscription_cancel_at(start, "monthly", 1, None) is None
    assert subscription_cancel_at(start, "quarterly", 1, 2) == int(datetime(2026, 7, 31, 12, 0, tzinfo=timezone.utc).timestamp())
