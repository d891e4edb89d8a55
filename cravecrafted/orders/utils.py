import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from cravecrafted.common.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from cravecrafted.common.custom_exceptions import OrderValidationError
from cravecrafted.common.utils import add_months, as_utc, from_minor_units
from cravecrafted.orders.constants import DEFAULT_TEST_TOKEN, RECURRENCE_INTERVALS, TEST_CARD_TOKENS
from cravecrafted.schema.full_schema import Orders, PaymentMethod, PaymentType

PAYMENT_METHOD_ALIASES = {
    "stripe": PaymentMethod.CARD.value,
    "card": PaymentMethod.CARD.value,
    "credit_card": PaymentMethod.CARD.value,
    "debit_card": PaymentMethod.CARD.value,
    "cod": PaymentMethod.COD.value,
    "cash_on_delivery": PaymentMethod.COD.value,
    "cash": PaymentMethod.COD.value,
}


def canonical_payment_method(raw: Optional[str]) -> Tuple[str, str]:
    """Free text payment method -> (PaymentMethod, PaymentType)."""
    key = (raw or "").strip().lower().replace("-", "_").replace(" ", "_")
    method = PAYMENT_METHOD_ALIASES.get(key)
    if method is None:
        raise OrderValidationError(
            "Unsupported payment method",
            details={"payment_method": raw, "allowed": sorted(PAYMENT_METHOD_ALIASES)},
        )
    payment_type = PaymentType.ONLINE.value if method == PaymentMethod.CARD.value else PaymentType.CASH_ON_DELIVERY.value
    return method, payment_type


def card_token(card_number: str) -> str:
    """Map a (test) card number to a gateway payment method token, raw numbers never leave the service."""
    digits = "".join(card_number.split())
    return TEST_CARD_TOKENS.get(digits, DEFAULT_TEST_TOKEN)


def card_last4(card_number: Optional[str]) -> Optional[str]:
    if not card_number:
        return None
    digits = "".join(card_number.split())
    return digits[-4:]


def recurrence_interval(recurrence: str, billing_cycle: int = 1) -> Tuple[str, int]:
    """weekly -> (week, 1), biweekly -> (week, 2), monthly -> (month, 1), quarterly -> (month, 3), scaled by billing_cycle."""
    try:
        interval, count = RECURRENCE_INTERVALS[recurrence]
    except KeyError:
        raise OrderValidationError(
            "Invalid recurrence",
            details={"recurrence": recurrence, "allowed": sorted(RECURRENCE_INTERVALS)},
        )
    return interval, count * max(1, int(billing_cycle))


def advance_billing_date(start: datetime, recurrence: str, billing_cycle: int = 1, periods: int = 1) -> datetime:
    interval, count = recurrence_interval(recurrence, billing_cycle)
    steps = count * periods
    if interval == "week":
        return start + timedelta(weeks=steps)
    return add_months(start, steps)


def subscription_cancel_at(start: datetime, recurrence: str, billing_cycle: int,
                           total_billing_cycles: Optional[int]) -> Optional[int]:
    """Unix timestamp at which a bounded subscription must stop, None when unlimited."""
    if not total_billing_cycles:
        return None
    end = advance_billing_date(start, recurrence, billing_cycle, periods=total_billing_cycles)
    return int(end.timestamp())


def pagination(page: int, limit: int) -> Tuple[int, int, int]:
    page = max(1, page)
    limit = max(1, min(limit or DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE))
    return page, limit, (page - 1) * limit


def pagination_meta(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_orders": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def billing_info(order: Orders) -> Optional[Dict[str, Any]]:
    if not order.is_subscription:
        return None
    unlimited = order.total_billing_cycles is None
    return {
        "next_billing_date": _iso(order.next_billing_date),
        "current_billing_cycle": order.current_billing_cycle,
        "total_billing_cycles": order.total_billing_cycles,
        "subscription_status": order.subscription_status,
        "is_unlimited": unlimited,
        "remaining_cycles": None if unlimited else max(0, order.total_billing_cycles - order.current_billing_cycle),
    }


def serialize_status_history(order: Orders) -> List[Dict[str, Any]]:
    return [
        {"status": ev.status, "timestamp": _iso(ev.created_at), "note": ev.note, "actor": ev.actor}
        for ev in order.status_history
    ]


def serialize_order(order: Orders, *, include_history: bool = True) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(order.public_id),
        "status": order.status,
        "payment_method": order.payment_method,
        "payment_type": order.payment_type,
        "currency": order.currency,
        "items_price": from_minor_units(order.items_price),
        "tax_price": from_minor_units(order.tax_price),
        "shipping_price": from_minor_units(order.shipping_price),
        "total_price": from_minor_units(order.total_price),
        "is_paid": order.is_paid,
        "paid_at": _iso(order.paid_at),
        "is_delivered": order.is_delivered,
        "delivered_at": _iso(order.delivered_at),
        "shipping_address": order.shipping_address,
        "order_items": [
            {
                "product_id": it.product_id,
                "name": it.name,
                "image": it.image,
                "price": from_minor_units(it.unit_price),
                "quantity": it.quantity,
            }
            for it in order.items
        ],
        "payment_intent_id": order.payment_intent_id,
        "payment_intent_status": order.payment_intent_status,
        "payment_result": order.payment_result,
        "payment_error": order.payment_error,
        "tracking": order.tracking,
        "cancellation_reason": order.cancellation_reason,
        "cancelled_at": _iso(order.cancelled_at),
        "return_reason": order.return_reason,
        "return_requested_at": _iso(order.return_requested_at),
        "refund_amount": from_minor_units(order.refund_amount),
        "refunded_at": _iso(order.refunded_at),
        "notes": order.notes,
        "is_subscription": order.is_subscription,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
    if order.is_subscription:
        data.update({
            "subscription_type": order.subscription_type,
            "subscription_name": order.subscription_name,
            "subscription_price": from_minor_units(order.subscription_price),
            "recurrence": order.recurrence,
            "billing_cycle": order.billing_cycle,
            "total_billing_cycles": order.total_billing_cycles,
            "current_billing_cycle": order.current_billing_cycle,
            "subscription_status": order.subscription_status,
            "next_billing_date": _iso(order.next_billing_date),
            "gateway_subscription_id": order.gateway_subscription_id,
            "is_cycle_order": order.anchor_order_id is not None,
            "billing_info": billing_info(order),
        })
    if include_history:
        data["status_history"] = serialize_status_history(order)
        if order.is_subscription:
            data["payment_history"] = [
                {
                    "payment_id": p.payment_id,
                    "amount": from_minor_units(p.amount),
                    "currency": p.currency,
                    "status": p.status,
                    "billing_cycle": p.billing_cycle,
                    "paid_at": _iso(p.paid_at),
                    "gateway_invoice_id": p.gateway_invoice_id,
                    "gateway_payment_intent_id": p.gateway_payment_intent_id,
                    "failure_reason": p.failure_reason,
                    "metadata": p.meta,
                }
                for p in order.payment_history
            ]
    return data
