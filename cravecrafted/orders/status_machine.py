from typing import Any, Dict, List, Optional, Tuple
from cravecrafted.common.custom_exceptions import OrderStateError, OrderValidationError
from cravecrafted.common.utils import now
from cravecrafted.orders.constants import COURIER_STATUSES, TERMINAL_STATUSES
from cravecrafted.schema.full_schema import OrderStatus, OrderStatusEvent, Orders, PaymentMethod, SubscriptionStatus

VALID_STATUSES = frozenset(s.value for s in OrderStatus)

# client facing progress, every stage maps to one or more order statuses
TRACKING_STAGES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("placed", (OrderStatus.PENDING.value,)),
    ("confirmed", (OrderStatus.PAYMENT_CONFIRMED.value,)),
    ("processing", (OrderStatus.PROCESSING.value,)),
    ("ready", (OrderStatus.READY_TO_SHIP.value,)),
    ("shipped", (OrderStatus.SHIPPED.value,)),
    ("out_for_delivery", (OrderStatus.OUT_FOR_DELIVERY.value,)),
    ("delivered", (OrderStatus.DELIVERED.value,)),
)

NON_CANCELLABLE_STATUSES = frozenset(COURIER_STATUSES) | {
    OrderStatus.CANCELLED.value, OrderStatus.RETURNED.value, OrderStatus.REFUNDED.value,
}

SUBSCRIPTION_TRANSITIONS: Dict[str, frozenset] = {
    SubscriptionStatus.ACTIVE.value: frozenset({
        SubscriptionStatus.PAUSED.value, SubscriptionStatus.CANCELLED.value,
        SubscriptionStatus.EXPIRED.value, SubscriptionStatus.PAYMENT_FAILED.value,
    }),
    SubscriptionStatus.PAUSED.value: frozenset({
        SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value,
    }),
    SubscriptionStatus.PAYMENT_FAILED.value: frozenset({
        SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value,
        SubscriptionStatus.EXPIRED.value,
    }),
    SubscriptionStatus.CANCELLED.value: frozenset(),
    SubscriptionStatus.EXPIRED.value: frozenset(),
}


def transition(order: Orders, new_status: str, note: Optional[str] = None, actor: Optional[str] = None,
               *, user_id: Optional[int] = None) -> OrderStatusEvent:
    """Append a status history entry and move the order to `new_status`.

    Legality of the move is the caller's concern. Side effects bound to the target status are applied
    here so every path that enters Delivered or Cancelled records the same fields.
    """
    status_value = OrderStatus(new_status).value
    ts = now()

    event = OrderStatusEvent(status=status_value, note=note, actor=actor, created_at=ts)
    order.status_history.append(event)
    order.status = status_value
    order.updated_at = ts

    if status_value == OrderStatus.DELIVERED.value:
        order.is_delivered = True
        order.delivered_at = ts
        if order.payment_method == PaymentMethod.COD.value and not order.is_paid:
            order.is_paid = True
            order.paid_at = ts
            order.payment_result = {
                "method": PaymentMethod.COD.value,
                "status": "collected",
                "amount": order.total_price,
                "currency": order.currency,
                "collected_at": ts.isoformat(),
            }
    elif status_value == OrderStatus.CANCELLED.value:
        order.cancelled_at = ts
        order.cancelled_by = user_id
        order.cancellation_reason = note

    return event


def get_tracking_stage(order: Any) -> Dict[str, Any]:
    status = getattr(order, "status", order)
    index = 0
    on_happy_path = False
    for i, (_, statuses) in enumerate(TRACKING_STAGES):
        if status in statuses:
            index = i
            on_happy_path = True
            break

    stages: List[Dict[str, Any]] = [
        {"stage": name, "completed": i <= index, "current": i == index}
        for i, (name, _) in enumerate(TRACKING_STAGES)
    ]
    return {
        "status": status,
        "current_stage": index,
        "current_stage_name": TRACKING_STAGES[index][0],
        "on_happy_path": on_happy_path,
        "stages": stages,
    }


def is_cancellable(order: Orders) -> bool:
    return order.status not in NON_CANCELLABLE_STATUSES


def is_deletable(order: Orders) -> bool:
    return order.status in (OrderStatus.CANCELLED.value, OrderStatus.PAYMENT_FAILED.value, OrderStatus.REFUNDED.value)


def ensure_cancellable(order: Orders) -> None:
    if not is_cancellable(order):
        raise OrderStateError(
            f"Order can not be cancelled in status {order.status}",
            details={"status": order.status},
        )


def ensure_deletable(order: Orders) -> None:
    if not is_deletable(order):
        raise OrderStateError(
            "Only cancelled, failed or refunded orders can be deleted",
            details={"status": order.status},
        )


def check_status_update(order: Orders, new_status: str) -> str:
    """Pre-check for an admin driven status change, returns the canonical status value."""
    if new_status not in VALID_STATUSES:
        raise OrderValidationError(
            "Invalid order status",
            details={"status": new_status, "allowed": sorted(VALID_STATUSES)},
        )
    if new_status == order.status:
        raise OrderStateError(f"Order is already {order.status}", details={"status": order.status})
    if order.status in TERMINAL_STATUSES:
        raise OrderStateError(
            f"Order in status {order.status} can no longer change status",
            details={"status": order.status},
        )
    if new_status == OrderStatus.CANCELLED.value:
        ensure_cancellable(order)
    # returns and refunds carry their own fields and go through dedicated endpoints
    if new_status in (OrderStatus.RETURNED.value, OrderStatus.REFUNDED.value):
        raise OrderStateError(
            f"Use the {'return' if new_status == OrderStatus.RETURNED.value else 'refund'} endpoint",
            details={"status": new_status},
        )
    return new_status


def can_change_subscription(current: Optional[str], new_status: str) -> bool:
    if current is None:
        return False
    return new_status in SUBSCRIPTION_TRANSITIONS.get(current, frozenset())


def set_subscription_status(order: Orders, new_status: str) -> None:
    value = SubscriptionStatus(new_status).value
    if not order.is_subscription:
        raise OrderStateError("Order is not a subscription")
    if not can_change_subscription(order.subscription_status, value):
        raise OrderStateError(
            f"Subscription can not move from {order.subscription_status} to {value}",
            details={"subscription_status": order.subscription_status},
        )
    order.subscription_status = value
    if value in (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value):
        order.next_billing_date = None
    order.updated_at = now()


def history_matches_status(order: Orders) -> bool:
    if not order.status_history:
        return False
    return order.status_history[-1].status == order.status
