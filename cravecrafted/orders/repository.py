from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
from sqlalchemy import func, select, update
from sqlalchemy.orm import selectinload
from cravecrafted.common.custom_exceptions import ConcurrencyConflict
from cravecrafted.common.utils import now
from cravecrafted.db.utils import dialect_insert
from cravecrafted.schema.full_schema import (
    Orders, PaymentEventStatus, PaymentRecordStatus, PaymentWebhookEvent, SubscriptionPayment, SubscriptionStatus, Users,
)
from cravecrafted.orders.constants import logger


def _order_select():
    # async sessions can not lazy load, pull every collection the serializers touch
    return (
        select(Orders)
        .options(
            selectinload(Orders.items),
            selectinload(Orders.status_history),
            selectinload(Orders.payment_history),
        )
        .execution_options(populate_existing=True)
    )


async def create_order(session, order: Orders) -> Orders:
    session.add(order)
    await session.flush()
    return order


async def find_by_id(session, order_id: int) -> Optional[Orders]:
    res = await session.execute(_order_select().where(Orders.id == order_id))
    return res.scalar_one_or_none()


async def find_by_public_id(session, public_id) -> Optional[Orders]:
    try:
        pid = public_id if isinstance(public_id, UUID) else UUID(str(public_id))
    except (TypeError, ValueError):
        return None
    res = await session.execute(_order_select().where(Orders.public_id == pid))
    return res.scalar_one_or_none()


async def find_by_gateway_subscription_id(session, subscription_id: str) -> Optional[Orders]:
    """The anchor order of a gateway subscription, spawned cycle orders share the id but are skipped."""
    if not subscription_id:
        return None
    stmt = _order_select().where(
        Orders.gateway_subscription_id == subscription_id,
        Orders.anchor_order_id.is_(None),
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def find_by_payment_intent_id(session, payment_intent_id: str) -> Optional[Orders]:
    if not payment_intent_id:
        return None
    stmt = _order_select().where(Orders.payment_intent_id == payment_intent_id).order_by(Orders.id).limit(1)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def list_orders(session, *, user_id: Optional[int] = None, status: Optional[str] = None,
                      created_from: Optional[datetime] = None, created_to: Optional[datetime] = None,
                      is_subscription: Optional[bool] = None, subscription_status: Optional[str] = None,
                      anchors_only: bool = False, offset: int = 0, limit: int = 10) -> Tuple[List[Orders], int]:
    conds = []
    if user_id is not None:
        conds.append(Orders.user_id == user_id)
    if status:
        conds.append(Orders.status == status)
    if created_from is not None:
        conds.append(Orders.created_at >= created_from)
    if created_to is not None:
        conds.append(Orders.created_at <= created_to)
    if is_subscription is not None:
        conds.append(Orders.is_subscription == is_subscription)
    if subscription_status:
        conds.append(Orders.subscription_status == subscription_status)
    if anchors_only:
        conds.append(Orders.anchor_order_id.is_(None))

    total = (await session.execute(select(func.count(Orders.id)).where(*conds))).scalar_one()
    stmt = _order_select().where(*conds).order_by(Orders.created_at.desc(), Orders.id.desc()).offset(offset).limit(limit)
    rows = (await session.execute(stmt)).scalars().all()
    return list(rows), int(total)


async def save_order(session, order: Orders) -> Orders:
    """Compare-and-swap on `version`, then flush the pending ORM changes of `order` in the same transaction.

    Raises ConcurrencyConflict when another writer committed since `order` was read.
    """
    expected = order.version
    stmt = (
        update(Orders)
        .where(Orders.id == order.id, Orders.version == expected)
        .values(version=expected + 1)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        logger.warning("orders.save.version_conflict", extra={"order_id": order.id, "expected_version": expected})
        raise ConcurrencyConflict(details={"order_id": str(order.public_id)})
    order.version = expected + 1
    order.updated_at = now()
    await session.flush()
    return order


async def claim_paid(session, order_id: int, paid_at: datetime) -> bool:
    """Flip is_paid false -> true, False when some other writer already did."""
    stmt = (
        update(Orders)
        .where(Orders.id == order_id, Orders.is_paid == False)
        .values(is_paid=True, paid_at=paid_at)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def delete_order(session, order: Orders) -> None:
    await session.delete(order)
    await session.flush()


async def succeeded_payment_for_invoice(session, invoice_id: str) -> Optional[SubscriptionPayment]:
    if not invoice_id:
        return None
    stmt = select(SubscriptionPayment).where(
        SubscriptionPayment.gateway_invoice_id == invoice_id,
        SubscriptionPayment.status == PaymentRecordStatus.SUCCEEDED.value,
    )
    return (await session.execute(stmt)).scalars().first()


async def payment_for_invoice(session, invoice_id: str, status: str) -> Optional[SubscriptionPayment]:
    if not invoice_id:
        return None
    stmt = select(SubscriptionPayment).where(
        SubscriptionPayment.gateway_invoice_id == invoice_id,
        SubscriptionPayment.status == status,
    )
    return (await session.execute(stmt)).scalars().first()


async def cycle_order(session, anchor_id: int, billing_cycle: int) -> Optional[Orders]:
    stmt = _order_select().where(Orders.anchor_order_id == anchor_id, Orders.current_billing_cycle == billing_cycle)
    return (await session.execute(stmt)).scalar_one_or_none()


async def count_cycle_orders(session, anchor_id: int) -> int:
    stmt = select(func.count(Orders.id)).where(Orders.anchor_order_id == anchor_id)
    return int((await session.execute(stmt)).scalar_one())


async def due_subscription_anchors(session, due_before: datetime, limit: int = 100) -> List[Orders]:
    stmt = (
        _order_select()
        .where(
            Orders.is_subscription == True,
            Orders.anchor_order_id.is_(None),
            Orders.subscription_status == SubscriptionStatus.ACTIVE.value,
            Orders.gateway_subscription_id.is_not(None),
            Orders.next_billing_date.is_not(None),
            Orders.next_billing_date <= due_before,
        )
        .order_by(Orders.next_billing_date)
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())


async def subscription_revenue_rows(session) -> List[Dict[str, Any]]:
    """Paid subscription payments grouped by calendar month, newest first."""
    stmt = select(SubscriptionPayment.paid_at, SubscriptionPayment.amount, SubscriptionPayment.order_id).where(
        SubscriptionPayment.status == PaymentRecordStatus.SUCCEEDED.value
    )
    rows = (await session.execute(stmt)).all()
    buckets: Dict[Tuple[int, int], Dict[str, Any]] = {}
    for paid_at, amount, _ in rows:
        key = (paid_at.year, paid_at.month)
        b = buckets.setdefault(key, {"year": key[0], "month": key[1], "revenue": 0, "order_count": 0})
        b["revenue"] += int(amount)
        b["order_count"] += 1
    return [buckets[k] for k in sorted(buckets, reverse=True)]


async def get_user_email(session, user_id: int) -> Optional[str]:
    res = await session.execute(select(Users.email).where(Users.id == user_id))
    return res.scalar_one_or_none()


# ---- webhook ledger ----

async def mark_webhook_received(session, provider: str, provider_event_id: str, event_type: Optional[str],
                                payload: Dict[str, Any]) -> Dict[str, Any]:
    """Insert the ledger row once per (provider, event id), returns the current row as a dict."""
    stmt = (
        dialect_insert(session, PaymentWebhookEvent)
        .values(
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            payload=payload,
            status=PaymentEventStatus.RECEIVED.value,
            attempts=0,
            created_at=now(),
        )
        .on_conflict_do_nothing(index_elements=["provider", "provider_event_id"])
    )
    await session.execute(stmt)

    bump = (
        update(PaymentWebhookEvent)
        .where(
            PaymentWebhookEvent.provider == provider,
            PaymentWebhookEvent.provider_event_id == provider_event_id,
            PaymentWebhookEvent.processed_at.is_(None),
        )
        .values(attempts=PaymentWebhookEvent.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    await session.execute(bump)

    res = await session.execute(
        select(
            PaymentWebhookEvent.id, PaymentWebhookEvent.status,
            PaymentWebhookEvent.processed_at, PaymentWebhookEvent.attempts,
        ).where(
            PaymentWebhookEvent.provider == provider,
            PaymentWebhookEvent.provider_event_id == provider_event_id,
        )
    )
    return dict(res.mappings().one())


async def mark_webhook_processed(session, event_row_id: int, status: str, order_id: Optional[int] = None,
                                 note: Optional[str] = None) -> None:
    stmt = (
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.id == event_row_id)
        .values(status=status, processed_at=now(), order_id=order_id, last_error=note)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def webhook_error_recorded(session, event_row_id: int, last_error: str, *, final: bool) -> None:
    """Store the failure, a final error also closes the row so redeliveries are acknowledged."""
    values: Dict[str, Any] = {"status": PaymentEventStatus.ERRORED.value, "last_error": last_error[:2000]}
    if final:
        values["processed_at"] = now()
    stmt = (
        update(PaymentWebhookEvent)
        .where(PaymentWebhookEvent.id == event_row_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)
