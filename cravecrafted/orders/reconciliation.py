from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from cravecrafted.common.utils import now
from cravecrafted.notifications import email as notify
from cravecrafted.orders import repository as repo
from cravecrafted.orders.constants import logger
from cravecrafted.orders.services import mark_paid, payment_result_from_intent, run_with_conflict_retry
from cravecrafted.orders.status_machine import can_change_subscription, is_cancellable, set_subscription_status, transition
from cravecrafted.orders.subscriptions import advance_schedule, apply_subscription_cancelled, invoice_ids, payment_entry
from cravecrafted.schema.full_schema import (
    OrderItem, OrderStatus, OrderStatusEvent, Orders, PaymentEventStatus, PaymentRecordStatus, SubscriptionStatus,
)


@dataclass
class ReconcileResult:
    status: str = PaymentEventStatus.PROCESSED.value
    note: Optional[str] = None
    order_id: Optional[int] = None
    # (kind, user id, template context) sent once the transaction is committed
    notices: List[Tuple[str, int, Dict[str, Any]]] = field(default_factory=list)


def _ignored(note: str, order_id: Optional[int] = None) -> ReconcileResult:
    return ReconcileResult(status=PaymentEventStatus.IGNORED.value, note=note, order_id=order_id)


def _ts(value: Any) -> datetime:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return now()


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = invoice.get("subscription")
    if isinstance(sub, dict):
        sub = sub.get("id")
    if sub:
        return sub
    # newer api versions nest it under parent.subscription_details
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


def clone_for_cycle(anchor: Orders, cycle: int, paid_at: datetime, payment_intent_id: Optional[str],
                    payment_result: Dict[str, Any], actor: str) -> Orders:
    """New order for a renewed billing cycle, already paid. Prices are the anchor's, never the invoice's."""
    spawned = Orders(
        user_id=anchor.user_id,
        anchor_order_id=anchor.id,
        status=OrderStatus.PAYMENT_CONFIRMED.value,
        shipping_address=dict(anchor.shipping_address or {}),
        payment_method=anchor.payment_method,
        payment_type=anchor.payment_type,
        currency=anchor.currency,
        items_price=anchor.items_price,
        tax_price=anchor.tax_price,
        shipping_price=anchor.shipping_price,
        total_price=anchor.total_price,
        is_paid=True,
        paid_at=paid_at,
        payment_intent_id=payment_intent_id,
        payment_intent_status="succeeded",
        payment_result=payment_result,
        notes=anchor.notes,
        is_subscription=True,
        subscription_type=anchor.subscription_type,
        subscription_name=anchor.subscription_name,
        subscription_price=anchor.subscription_price,
        recurrence=anchor.recurrence,
        billing_cycle=anchor.billing_cycle,
        total_billing_cycles=anchor.total_billing_cycles,
        current_billing_cycle=cycle,
        gateway_subscription_id=anchor.gateway_subscription_id,
        gateway_customer_id=anchor.gateway_customer_id,
        gateway_price_id=anchor.gateway_price_id,
    )
    spawned.items = [
        OrderItem(product_id=it.product_id, name=it.name, image=it.image, unit_price=it.unit_price, quantity=it.quantity)
        for it in anchor.items
    ]
    spawned.status_history = [OrderStatusEvent(
        status=OrderStatus.PAYMENT_CONFIRMED.value, note=f"Billing cycle {cycle} renewal", actor=actor)]
    spawned.payment_history = []
    return spawned


async def record_cycle_renewal(session, anchor: Orders, invoice: Dict[str, Any], *, actor: str = "gateway") -> Optional[Orders]:
    """Book one paid renewal invoice against `anchor`, returns the spawned cycle order or None when already booked.

    Webhook deliveries and the billing poll both land here. The payment entry, the spawned order and the anchor's
    counters are written in the caller's transaction, (anchor, cycle) and (invoice, status) uniqueness backs the
    pre-checks when two paths race.
    """
    invoice_id, pi_id = invoice_ids(invoice)
    if invoice_id and await repo.succeeded_payment_for_invoice(session, invoice_id):
        logger.info("orders.renewal.already_recorded", extra={"order_id": anchor.id, "invoice_id": invoice_id})
        return None
    if anchor.subscription_status in (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value):
        logger.warning("orders.renewal.subscription_closed",
                       extra={"order_id": anchor.id, "invoice_id": invoice_id, "sub_status": anchor.subscription_status})
        return None

    cycle = anchor.current_billing_cycle + 1
    if anchor.total_billing_cycles is not None and cycle > anchor.total_billing_cycles:
        logger.warning("orders.renewal.beyond_last_cycle", extra={"order_id": anchor.id, "invoice_id": invoice_id})
        return None
    if await repo.cycle_order(session, anchor.id, cycle) is not None:
        logger.info("orders.renewal.cycle_exists", extra={"order_id": anchor.id, "billing_cycle": cycle})
        return None

    paid_at = _ts((invoice.get("status_transitions") or {}).get("paid_at"))
    amount = invoice.get("amount_paid") or anchor.subscription_price or anchor.total_price
    anchor.payment_history.append(payment_entry(
        anchor, cycle=cycle, status=PaymentRecordStatus.SUCCEEDED.value, amount=int(amount),
        invoice_id=invoice_id, payment_intent_id=pi_id, paid_at=paid_at,
        meta={"billing_reason": invoice.get("billing_reason"), "source": actor},
    ))

    result = {"id": pi_id or invoice_id, "status": "succeeded", "amount": int(amount),
              "currency": anchor.currency, "invoice_id": invoice_id, "update_time": paid_at.isoformat()}
    spawned = clone_for_cycle(anchor, cycle, paid_at, pi_id, result, actor)
    await repo.create_order(session, spawned)

    anchor.current_billing_cycle = cycle
    if anchor.subscription_status == SubscriptionStatus.PAYMENT_FAILED.value:
        set_subscription_status(anchor, SubscriptionStatus.ACTIVE.value)
        if anchor.status == OrderStatus.PAYMENT_FAILED.value:
            transition(anchor, OrderStatus.PAYMENT_CONFIRMED.value, note="Subscription payment recovered", actor=actor)
    advance_schedule(anchor, paid_at)
    await repo.save_order(session, anchor)
    logger.info("orders.renewal.recorded",
                extra={"order_id": anchor.id, "spawned_order_id": spawned.id, "billing_cycle": cycle, "invoice_id": invoice_id})
    return spawned


# ---------------------------------------------------------------------------------------------
# event handlers, each runs inside one transaction and must be safe to apply twice

async def _order_for_intent(session, pi: Dict[str, Any]) -> Optional[Orders]:
    order_ref = (pi.get("metadata") or {}).get("order_id")
    order = await repo.find_by_public_id(session, order_ref) if order_ref else None
    if order is None:
        order = await repo.find_by_payment_intent_id(session, pi.get("id"))
    return order


async def on_payment_succeeded(session, obj: Dict[str, Any]) -> ReconcileResult:
    order = await _order_for_intent(session, obj)
    if order is None:
        return _ignored("lookup_miss")
    if order.is_paid:
        return _ignored("already_paid", order.id)

    order.payment_intent_id = obj.get("id")
    order.payment_intent_status = obj.get("status") or "succeeded"
    await mark_paid(session, order, payment_result_from_intent(obj), note="Payment confirmed by gateway", actor="gateway")
    return ReconcileResult(order_id=order.id, notices=[(notify.PAYMENT_CONFIRMED, order.user_id, notify.order_context(order))])


async def on_payment_failed(session, obj: Dict[str, Any]) -> ReconcileResult:
    order = await _order_for_intent(session, obj)
    if order is None:
        return _ignored("lookup_miss")
    # a late failure for an earlier attempt never downgrades a paid order
    if order.is_paid:
        return _ignored("already_paid", order.id)
    if order.status != OrderStatus.PENDING.value:
        return _ignored(f"order_{order.status.lower()}", order.id)

    err = obj.get("last_payment_error") or {}
    order.payment_intent_id = obj.get("id")
    order.payment_intent_status = obj.get("status")
    order.payment_error = {"message": err.get("message"), "code": err.get("code"), "decline_code": err.get("decline_code")}
    transition(order, OrderStatus.PAYMENT_FAILED.value, note=err.get("message") or "Payment failed", actor="gateway")
    await repo.save_order(session, order)
    return ReconcileResult(order_id=order.id, notices=[
        (notify.PAYMENT_FAILED, order.user_id, notify.order_context(order, reason=err.get("message")))])


async def on_payment_canceled(session, obj: Dict[str, Any]) -> ReconcileResult:
    order = await _order_for_intent(session, obj)
    if order is None:
        return _ignored("lookup_miss")
    if order.is_paid:
        return _ignored("already_paid", order.id)
    if order.status == OrderStatus.CANCELLED.value:
        return _ignored("already_cancelled", order.id)
    if not is_cancellable(order):
        return _ignored(f"order_{order.status.lower()}", order.id)

    order.payment_intent_status = "canceled"
    reason = obj.get("cancellation_reason") or "Payment cancelled at gateway"
    transition(order, OrderStatus.CANCELLED.value, note=reason, actor="gateway")
    await repo.save_order(session, order)
    return ReconcileResult(order_id=order.id, notices=[
        (notify.ORDER_CANCELLED, order.user_id, notify.order_context(order, reason=reason))])


async def on_invoice_paid(session, obj: Dict[str, Any]) -> ReconcileResult:
    anchor = await repo.find_by_gateway_subscription_id(session, invoice_subscription_id(obj))
    if anchor is None:
        return _ignored("lookup_miss")

    if obj.get("billing_reason") == "subscription_create":
        # cycle 1 is booked when the subscription is created, only fill the gap if that write never landed
        invoice_id, pi_id = invoice_ids(obj)
        if any(p.billing_cycle == 1 and p.status == PaymentRecordStatus.SUCCEEDED.value for p in anchor.payment_history):
            return _ignored("initial_invoice_recorded", anchor.id)
        paid_at = _ts((obj.get("status_transitions") or {}).get("paid_at"))
        amount = int(obj.get("amount_paid") or anchor.subscription_price or anchor.total_price)
        anchor.payment_history.append(payment_entry(
            anchor, cycle=1, status=PaymentRecordStatus.SUCCEEDED.value, amount=amount,
            invoice_id=invoice_id, payment_intent_id=pi_id, paid_at=paid_at,
            meta={"billing_reason": "subscription_create", "source": "gateway"},
        ))
        if anchor.is_paid or anchor.subscription_status != SubscriptionStatus.PAYMENT_FAILED.value:
            await repo.save_order(session, anchor)
            return ReconcileResult(order_id=anchor.id, note="initial_invoice")

        # the first charge settled after the subscription was stored as failed
        set_subscription_status(anchor, SubscriptionStatus.ACTIVE.value)
        anchor.payment_intent_id = pi_id or anchor.payment_intent_id
        anchor.payment_intent_status = "succeeded"
        anchor.next_billing_date = None
        advance_schedule(anchor, paid_at)
        result = {"id": pi_id or invoice_id, "status": "succeeded", "amount": amount,
                  "currency": anchor.currency, "invoice_id": invoice_id, "update_time": paid_at.isoformat()}
        await mark_paid(session, anchor, result, note="Subscription payment completed", actor="gateway")
        return ReconcileResult(order_id=anchor.id, note="initial_invoice_recovered", notices=[
            (notify.PAYMENT_CONFIRMED, anchor.user_id, notify.order_context(anchor))])

    spawned = await record_cycle_renewal(session, anchor, obj, actor="gateway")
    if spawned is None:
        return _ignored("renewal_not_recorded", anchor.id)
    return ReconcileResult(order_id=anchor.id, note=f"cycle_{spawned.current_billing_cycle}", notices=[
        (notify.SUBSCRIPTION_RENEWED, anchor.user_id, notify.order_context(spawned))])


async def on_invoice_payment_failed(session, obj: Dict[str, Any]) -> ReconcileResult:
    anchor = await repo.find_by_gateway_subscription_id(session, invoice_subscription_id(obj))
    if anchor is None:
        return _ignored("lookup_miss")
    invoice_id, pi_id = invoice_ids(obj)
    if invoice_id and await repo.payment_for_invoice(session, invoice_id, PaymentRecordStatus.FAILED.value):
        return _ignored("failure_recorded", anchor.id)
    if invoice_id and await repo.succeeded_payment_for_invoice(session, invoice_id):
        return _ignored("invoice_already_paid", anchor.id)
    if anchor.subscription_status in (SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value):
        return _ignored(f"subscription_{anchor.subscription_status}", anchor.id)

    err = obj.get("last_finalization_error") or {}
    reason = err.get("message") or "Subscription payment failed"
    anchor.payment_history.append(payment_entry(
        anchor, cycle=anchor.current_billing_cycle + 1, status=PaymentRecordStatus.FAILED.value,
        amount=int(obj.get("amount_due") or anchor.subscription_price or anchor.total_price),
        invoice_id=invoice_id, payment_intent_id=pi_id, paid_at=now(), failure_reason=reason,
        meta={"billing_reason": obj.get("billing_reason"), "attempt_count": obj.get("attempt_count")},
    ))
    if can_change_subscription(anchor.subscription_status, SubscriptionStatus.PAYMENT_FAILED.value):
        set_subscription_status(anchor, SubscriptionStatus.PAYMENT_FAILED.value)
    if anchor.status != OrderStatus.PAYMENT_FAILED.value:
        transition(anchor, OrderStatus.PAYMENT_FAILED.value, note=reason, actor="gateway")
    await repo.save_order(session, anchor)
    return ReconcileResult(order_id=anchor.id, notices=[
        (notify.SUBSCRIPTION_PAYMENT_FAILED, anchor.user_id, notify.order_context(anchor, reason=reason))])


async def on_subscription_deleted(session, obj: Dict[str, Any]) -> ReconcileResult:
    anchor = await repo.find_by_gateway_subscription_id(session, obj.get("id"))
    if anchor is None:
        return _ignored("lookup_miss")
    if anchor.subscription_status == SubscriptionStatus.EXPIRED.value:
        # bounded subscriptions end through cancel_at after their last cycle
        return _ignored("subscription_expired", anchor.id)
    if anchor.subscription_status == SubscriptionStatus.CANCELLED.value and (
            anchor.status == OrderStatus.CANCELLED.value or not is_cancellable(anchor)):
        return _ignored("already_cancelled", anchor.id)

    apply_subscription_cancelled(anchor, "Subscription cancelled by payment provider", "gateway")
    await repo.save_order(session, anchor)
    return ReconcileResult(order_id=anchor.id, notices=[
        (notify.ORDER_CANCELLED, anchor.user_id, notify.order_context(anchor, reason="Subscription cancelled"))])


EVENT_HANDLERS: Dict[str, Callable[[Any, Dict[str, Any]], Awaitable[ReconcileResult]]] = {
    "payment_intent.succeeded": on_payment_succeeded,
    "payment_intent.payment_failed": on_payment_failed,
    "payment_intent.canceled": on_payment_canceled,
    "invoice.payment_succeeded": on_invoice_paid,
    "invoice.paid": on_invoice_paid,
    "invoice.payment_failed": on_invoice_payment_failed,
    "customer.subscription.deleted": on_subscription_deleted,
}


async def reconcile_event(session, event: Dict[str, Any], ledger_id: Optional[int] = None) -> ReconcileResult:
    """Apply one verified gateway event and commit it together with its ledger row."""
    event_type = event.get("type")
    handler = EVENT_HANDLERS.get(event_type)
    obj = (event.get("data") or {}).get("object") or {}

    async def _process(session):
        if handler is None:
            result = _ignored("unhandled_event_type")
        else:
            result = await handler(session, obj)
        if ledger_id is not None:
            await repo.mark_webhook_processed(session, ledger_id, result.status, order_id=result.order_id, note=result.note)
        return result

    result = await run_with_conflict_retry(session, _process)
    if handler is None:
        logger.info("orders.webhook.unhandled_type", extra={"event_type": event_type, "event_id": event.get("id")})
    elif result.note == "lookup_miss":
        logger.warning("orders.webhook.lookup_miss", extra={"event_type": event_type, "event_id": event.get("id")})
    else:
        logger.info(
            "orders.webhook.reconciled",
            extra={"event_type": event_type, "event_id": event.get("id"), "order_id": result.order_id,
                   "outcome": result.status, "note": result.note},
        )
    return result
