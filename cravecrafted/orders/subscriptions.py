from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from cravecrafted.common.custom_exceptions import OrderStateError
from cravecrafted.common.utils import as_utc, from_minor_units, now
from cravecrafted.notifications import email as notify
from cravecrafted.orders import repository as repo
from cravecrafted.orders.constants import logger
from cravecrafted.orders.gateway import GatewayError, PaymentGateway
from cravecrafted.orders.services import (
    OrderOutcome, ValidatedOrder, actor_label, ensure_owner_or_admin, load_order, mark_paid, raise_for_gateway_error,
    record_gateway_failure, run_with_conflict_retry,
)
from cravecrafted.orders.status_machine import can_change_subscription, is_cancellable, set_subscription_status, transition
from cravecrafted.orders.utils import advance_billing_date, recurrence_interval, subscription_cancel_at
from cravecrafted.schema.full_schema import (
    OrderStatus, Orders, PaymentRecordStatus, SubscriptionPayment, SubscriptionStatus, Users,
)


def invoice_ids(invoice: Any) -> Tuple[Optional[str], Optional[str]]:
    """(invoice id, payment intent id) from an invoice that may or may not be expanded."""
    if not invoice:
        return None, None
    if isinstance(invoice, str):
        return invoice, None
    pi = invoice.get("payment_intent")
    pi_id = pi.get("id") if isinstance(pi, dict) else pi
    return invoice.get("id"), pi_id


def advance_schedule(order: Orders, paid_at: datetime) -> None:
    """Move next_billing_date one period on, or expire a bounded subscription whose last cycle is paid."""
    if order.total_billing_cycles is not None and order.current_billing_cycle >= order.total_billing_cycles:
        if order.subscription_status != SubscriptionStatus.EXPIRED.value:
            set_subscription_status(order, SubscriptionStatus.EXPIRED.value)
        order.next_billing_date = None
        return
    base = as_utc(order.next_billing_date) or paid_at
    if base < paid_at:
        base = paid_at
    order.next_billing_date = advance_billing_date(base, order.recurrence, order.billing_cycle)


def payment_entry(order: Orders, *, cycle: int, status: str, amount: int, invoice_id: Optional[str],
                  payment_intent_id: Optional[str], paid_at: datetime, failure_reason: Optional[str] = None,
                  meta: Optional[Dict[str, Any]] = None) -> SubscriptionPayment:
    return SubscriptionPayment(
        payment_id=payment_intent_id or invoice_id,
        amount=amount,
        currency=order.currency,
        status=status,
        billing_cycle=cycle,
        paid_at=paid_at,
        gateway_invoice_id=invoice_id,
        gateway_payment_intent_id=payment_intent_id,
        failure_reason=failure_reason,
        meta=meta,
    )


async def start_subscription(session, gateway: PaymentGateway, notifier, user: Users, order: Orders,
                             data: ValidatedOrder) -> OrderOutcome:
    """Customer, default payment method, recurring price and subscription at the gateway, then cycle 1."""
    order_id = order.id
    started = now()
    try:
        customer = await gateway.create_or_get_customer(
            user.email, name=user.name, metadata={"user_id": str(user.public_id)})
        await gateway.attach_payment_method(customer["id"], data.payment_token,
                                            idempotency_key=f"order-{order.public_id}-pm")
        interval, interval_count = recurrence_interval(order.recurrence, order.billing_cycle)
        price = await gateway.create_recurring_price(
            order.subscription_price, interval, interval_count,
            {"name": order.subscription_name, "order_id": str(order.public_id)},
            currency=order.currency,
            idempotency_key=f"order-{order.public_id}-price",
        )
        sub = await gateway.create_subscription(
            customer["id"], price["id"],
            metadata={"order_id": str(order.public_id), "user_id": str(user.public_id)},
            cancel_at=subscription_cancel_at(started, order.recurrence, order.billing_cycle, order.total_billing_cycles),
            idempotency_key=f"order-{order.public_id}-sub",
        )
    except GatewayError as exc:
        failed = await record_gateway_failure(session, order_id, exc)
        notifier.notify(notify.PAYMENT_FAILED, user.email, notify.order_context(failed, reason=exc.message))
        raise_for_gateway_error(exc, failed)

    outcome = await run_with_conflict_retry(
        session, apply_subscription_created, order_id, sub, customer["id"], price["id"], started)
    kind = notify.PAYMENT_CONFIRMED if outcome.order.is_paid else notify.PAYMENT_FAILED
    notifier.notify(kind, user.email, notify.order_context(outcome.order))
    logger.info(
        "orders.subscription.created",
        extra={"order_id": order_id, "subscription_id": sub.get("id"), "sub_status": outcome.order.subscription_status},
    )
    return outcome


async def apply_subscription_created(session, order_id: int, sub: Dict[str, Any], customer_id: str,
                                     price_id: str, started: datetime) -> OrderOutcome:
    order = await repo.find_by_id(session, order_id)
    order.gateway_subscription_id = sub.get("id")
    order.gateway_customer_id = customer_id
    order.gateway_price_id = price_id
    invoice_id, pi_id = invoice_ids(sub.get("latest_invoice"))
    if pi_id:
        order.payment_intent_id = pi_id

    if sub.get("status") not in ("active", "trialing"):
        order.subscription_status = SubscriptionStatus.PAYMENT_FAILED.value
        order.payment_error = {"message": "subscription not activated", "sub_status": sub.get("status")}
        if order.status != OrderStatus.PAYMENT_FAILED.value:
            transition(order, OrderStatus.PAYMENT_FAILED.value, note=f"Subscription {sub.get('status')}", actor="gateway")
        await repo.save_order(session, order)
        return OrderOutcome(order=order, status_code=201)

    order.subscription_status = SubscriptionStatus.ACTIVE.value
    order.current_billing_cycle = 1
    # the initial invoice webhook may already have recorded cycle 1
    if not any(p.billing_cycle == 1 and p.status == PaymentRecordStatus.SUCCEEDED.value for p in order.payment_history):
        order.payment_history.append(payment_entry(
            order, cycle=1, status=PaymentRecordStatus.SUCCEEDED.value, amount=order.subscription_price,
            invoice_id=invoice_id, payment_intent_id=pi_id, paid_at=started,
            meta={"billing_reason": "subscription_create"},
        ))
    order.next_billing_date = None
    advance_schedule(order, started)
    result = {"id": sub.get("id"), "status": sub.get("status"), "amount": order.subscription_price,
              "currency": order.currency, "invoice_id": invoice_id, "update_time": started.isoformat()}
    await mark_paid(session, order, result, note="Subscription started", actor="gateway")
    return OrderOutcome(order=order, status_code=201)


def _ensure_anchor(order: Orders) -> None:
    if not order.is_subscription or order.anchor_order_id is not None:
        raise OrderStateError("Order is not a subscription")


async def pause_subscription(session, gateway: PaymentGateway, user: Users, order_ref) -> Orders:
    order = await load_order(session, order_ref)
    ensure_owner_or_admin(order, user)
    _ensure_anchor(order)
    if not can_change_subscription(order.subscription_status, SubscriptionStatus.PAUSED.value):
        raise OrderStateError(f"Subscription can not be paused while {order.subscription_status}")
    try:
        await gateway.pause_subscription(order.gateway_subscription_id)
    except GatewayError as exc:
        raise_for_gateway_error(exc, order)

    async def _apply(session, order_ref):
        order = await load_order(session, order_ref)
        set_subscription_status(order, SubscriptionStatus.PAUSED.value)
        await repo.save_order(session, order)
        return order

    order = await run_with_conflict_retry(session, _apply, order_ref)
    logger.info("orders.subscription.paused", extra={"order_id": order.id, "actor": actor_label(user)})
    return order


async def resume_subscription(session, gateway: PaymentGateway, user: Users, order_ref) -> Orders:
    order = await load_order(session, order_ref)
    ensure_owner_or_admin(order, user)
    _ensure_anchor(order)
    if order.subscription_status != SubscriptionStatus.PAUSED.value:
        raise OrderStateError(f"Subscription can not be resumed while {order.subscription_status}")
    try:
        await gateway.resume_subscription(order.gateway_subscription_id)
    except GatewayError as exc:
        raise_for_gateway_error(exc, order)

    async def _apply(session, order_ref):
        order = await load_order(session, order_ref)
        set_subscription_status(order, SubscriptionStatus.ACTIVE.value)
        current = now()
        nbd = as_utc(order.next_billing_date)
        if nbd is None or nbd < current:
            order.next_billing_date = advance_billing_date(current, order.recurrence, order.billing_cycle)
        await repo.save_order(session, order)
        return order

    order = await run_with_conflict_retry(session, _apply, order_ref)
    logger.info("orders.subscription.resumed", extra={"order_id": order.id, "actor": actor_label(user)})
    return order


def apply_subscription_cancelled(order: Orders, note: str, actor: str, user_id: Optional[int] = None) -> None:
    if order.subscription_status not in (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value):
        set_subscription_status(order, SubscriptionStatus.CANCELLED.value)
    # a shipped anchor keeps its delivery status, only the subscription ends
    if order.status != OrderStatus.CANCELLED.value and is_cancellable(order):
        transition(order, OrderStatus.CANCELLED.value, note=note, actor=actor, user_id=user_id)


async def cancel_subscription(session, gateway: PaymentGateway, notifier, user: Users, order_ref,
                              reason: Optional[str] = None) -> Orders:
    order = await load_order(session, order_ref)
    ensure_owner_or_admin(order, user)
    _ensure_anchor(order)
    if order.subscription_status in (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value):
        raise OrderStateError(f"Subscription is already {order.subscription_status}")
    if order.gateway_subscription_id:
        try:
            await gateway.cancel_subscription(order.gateway_subscription_id)
        except GatewayError as exc:
            raise_for_gateway_error(exc, order)

    note = reason or "Subscription cancelled"

    async def _apply(session, order_ref):
        order = await load_order(session, order_ref)
        apply_subscription_cancelled(order, note, actor_label(user), user_id=user.id)
        await repo.save_order(session, order)
        return order

    order = await run_with_conflict_retry(session, _apply, order_ref)
    email = user.email if order.user_id == user.id else await repo.get_user_email(session, order.user_id)
    notifier.notify(notify.ORDER_CANCELLED, email, notify.order_context(order, reason=note))
    logger.info("orders.subscription.cancelled", extra={"order_id": order.id, "actor": actor_label(user)})
    return order


async def active_subscriptions(session, offset: int, limit: int) -> Tuple[List[Orders], int]:
    return await repo.list_orders(
        session, is_subscription=True, subscription_status=SubscriptionStatus.ACTIVE.value,
        anchors_only=True, offset=offset, limit=limit,
    )


async def subscription_revenue(session) -> Dict[str, Any]:
    rows = await repo.subscription_revenue_rows(session)
    months = []
    total = 0
    for r in rows:
        total += r["revenue"]
        months.append({
            "year": r["year"],
            "month": r["month"],
            "revenue": from_minor_units(r["revenue"]),
            "order_count": r["order_count"],
            "average_order_value": from_minor_units(round(r["revenue"] / r["order_count"])) if r["order_count"] else 0,
        })
    return {"total_revenue": from_minor_units(total), "months": months}
