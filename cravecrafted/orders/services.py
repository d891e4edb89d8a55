from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional
from sqlalchemy.exc import IntegrityError
from cravecrafted.common.custom_exceptions import (
    ConcurrencyConflict, GatewayUnavailableError, OrderAuthorizationError, OrderNotFoundError, OrderStateError,
    OrderValidationError, PaymentDeclinedError, PaymentFailedError,
)
from cravecrafted.common.utils import from_minor_units, now, to_minor_units
from cravecrafted.config.settings import config_settings
from cravecrafted.notifications import email as notify
from cravecrafted.orders import repository as repo
from cravecrafted.orders.constants import DECLINE_MESSAGES, RELEASABLE_INTENT_STATUSES, REFUNDABLE_STATUSES, logger
from cravecrafted.orders.gateway import (
    GatewayDeclineError, GatewayError, GatewayInvalidRequestError, GatewayTransientError, PaymentGateway,
)
from cravecrafted.orders.models import (
    ConfirmCodIn, ConfirmPaymentIn, OrderCreateIn, ReasonIn, RefundIn, StatusUpdateIn, TrackingUpdateIn,
)
from cravecrafted.orders.status_machine import check_status_update, ensure_cancellable, ensure_deletable, transition
from cravecrafted.orders.utils import canonical_payment_method, card_last4, card_token, recurrence_interval
from cravecrafted.schema.full_schema import (
    OrderItem, OrderStatus, OrderStatusEvent, Orders, PaymentMethod, SubscriptionStatus, UserRole, Users,
)


@dataclass
class ValidatedOrder:
    items: List[Dict[str, Any]]
    shipping_address: Dict[str, Any]
    payment_method: str
    payment_type: str
    items_price: int
    tax_price: int
    shipping_price: int
    total_price: int
    payment_token: Optional[str] = None
    card_last4: Optional[str] = None
    subscription: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


@dataclass
class OrderOutcome:
    order: Orders
    status_code: int = 201
    extra: Dict[str, Any] = field(default_factory=dict)


def actor_label(user: Optional[Users]) -> str:
    if user is None:
        return "system"
    return f"{user.role}:{user.public_id}"


def is_admin(user: Users) -> bool:
    return user.role == UserRole.ADMIN.value


def ensure_owner_or_admin(order: Orders, user: Users) -> None:
    if order.user_id != user.id and not is_admin(user):
        raise OrderAuthorizationError("Not authorized to access this order")


# ---------------------------------------------------------------------------------------------
# validation

def validate_order_request(payload: OrderCreateIn) -> ValidatedOrder:
    """Every rule that must hold before anything is persisted or sent to the gateway."""
    errors: List[Dict[str, Any]] = []

    if not payload.order_items:
        errors.append({"field": "order_items", "msg": "at least one item is required"})
    items: List[Dict[str, Any]] = []
    for idx, it in enumerate(payload.order_items):
        missing = [f for f in ("product_id", "name", "price", "quantity") if getattr(it, f) in (None, "")]
        if missing:
            errors.append({"field": f"order_items[{idx}]", "msg": f"missing {', '.join(missing)}"})
            continue
        if it.quantity <= 0:
            errors.append({"field": f"order_items[{idx}].quantity", "msg": "quantity must be greater than 0"})
            continue
        if it.price < 0:
            errors.append({"field": f"order_items[{idx}].price", "msg": "price must not be negative"})
            continue
        items.append({
            "product_id": str(it.product_id), "name": it.name, "image": it.image,
            "unit_price": to_minor_units(it.price), "quantity": int(it.quantity),
        })

    addr = payload.shipping_address
    if addr is None:
        errors.append({"field": "shipping_address", "msg": "shipping address is required"})
        shipping_address: Dict[str, Any] = {}
    else:
        for f in ("address", "city", "postal_code"):
            if not (getattr(addr, f) or "").strip():
                errors.append({"field": f"shipping_address.{f}", "msg": f"{f} is required"})
        shipping_address = addr.model_dump()

    method = payment_type = None
    try:
        method, payment_type = canonical_payment_method(payload.payment_method)
    except OrderValidationError as exc:
        errors.append({"field": "payment_method", "msg": exc.message})

    for name in ("tax_price", "shipping_price"):
        if getattr(payload, name) < 0:
            errors.append({"field": name, "msg": f"{name} must not be negative"})
    items_price = payload.items_price
    if items_price is None:
        items_price = sum((Decimal(i["unit_price"]) * i["quantity"] for i in items), Decimal("0")) / 100
    total = payload.total_price
    if total is None:
        total = items_price + payload.tax_price + payload.shipping_price
    if total <= 0:
        errors.append({"field": "total_price", "msg": "total price must be greater than 0"})

    token = last4 = None
    if method == PaymentMethod.CARD.value:
        if payload.payment_method_id:
            token = payload.payment_method_id
        else:
            card = payload.card_details
            if card is None:
                errors.append({"field": "card_details", "msg": "card details are required for card payments"})
            else:
                for f in ("number", "exp_month", "exp_year", "cvc"):
                    if getattr(card, f) in (None, ""):
                        errors.append({"field": f"card_details.{f}", "msg": f"{f} is required"})
                if card.exp_month is not None and not 1 <= card.exp_month <= 12:
                    errors.append({"field": "card_details.exp_month", "msg": "exp_month must be between 1 and 12"})
                if card.number:
                    token = card_token(card.number)
                    last4 = card_last4(card.number)

    subscription = None
    if payload.is_subscription:
        sub = payload.subscription
        if sub is None:
            errors.append({"field": "subscription", "msg": "subscription details are required"})
        else:
            try:
                recurrence_interval(sub.recurrence or "", sub.billing_cycle)
            except OrderValidationError as exc:
                errors.append({"field": "subscription.recurrence", "msg": exc.message})
            if sub.billing_cycle < 1:
                errors.append({"field": "subscription.billing_cycle", "msg": "billing_cycle must be at least 1"})
            if sub.total_billing_cycles is not None and sub.total_billing_cycles < 1:
                errors.append({"field": "subscription.total_billing_cycles", "msg": "total_billing_cycles must be at least 1"})
            subscription = {
                "subscription_type": sub.subscription_type or "custom",
                "name": sub.name or (items[0]["name"] if items else "Subscription"),
                "recurrence": sub.recurrence,
                "billing_cycle": sub.billing_cycle,
                "total_billing_cycles": sub.total_billing_cycles,
            }
        if method == PaymentMethod.COD.value:
            errors.append({"field": "payment_method", "msg": "subscriptions require card payment"})

    if errors:
        raise OrderValidationError("Invalid order request", details={"errors": errors})

    return ValidatedOrder(
        items=items,
        shipping_address=shipping_address,
        payment_method=method,
        payment_type=payment_type,
        items_price=to_minor_units(items_price),
        tax_price=to_minor_units(payload.tax_price),
        shipping_price=to_minor_units(payload.shipping_price),
        total_price=to_minor_units(total),
        payment_token=token,
        card_last4=last4,
        subscription=subscription,
        notes=payload.notes,
    )


def build_order(user: Users, data: ValidatedOrder, currency: str) -> Orders:
    order = Orders(
        user_id=user.id,
        shipping_address=data.shipping_address,
        payment_method=data.payment_method,
        payment_type=data.payment_type,
        currency=currency,
        items_price=data.items_price,
        tax_price=data.tax_price,
        shipping_price=data.shipping_price,
        total_price=data.total_price,
        notes=data.notes,
        status=OrderStatus.PENDING.value,
    )
    order.items = [OrderItem(**it) for it in data.items]
    order.status_history = [OrderStatusEvent(status=OrderStatus.PENDING.value, note="Order placed", actor=actor_label(user))]
    if data.subscription:
        sub = data.subscription
        order.is_subscription = True
        order.subscription_type = sub["subscription_type"]
        order.subscription_name = sub["name"]
        order.subscription_price = data.total_price
        order.recurrence = sub["recurrence"]
        order.billing_cycle = sub["billing_cycle"]
        order.total_billing_cycles = sub["total_billing_cycles"]
        order.current_billing_cycle = 1
    order.payment_history = []
    return order


# ---------------------------------------------------------------------------------------------
# conflict handling

async def run_with_conflict_retry(session, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
    """Run `fn` and commit, on a lost update roll back and run it once more against fresh state."""
    for attempt in (1, 2):
        try:
            result = await fn(session, *args, **kwargs)
            await session.commit()
            return result
        except (ConcurrencyConflict, IntegrityError) as exc:
            await session.rollback()
            if attempt == 2:
                if isinstance(exc, ConcurrencyConflict):
                    raise
                raise ConcurrencyConflict() from exc
            logger.info("orders.conflict.retrying", extra={"error_type": type(exc).__name__})


async def load_order(session, order_ref) -> Orders:
    order = await repo.find_by_public_id(session, order_ref)
    if order is None:
        raise OrderNotFoundError("Order not found", details={"order_id": str(order_ref)})
    return order


# ---------------------------------------------------------------------------------------------
# order creation orchestrator

async def create_order(session, gateway: PaymentGateway, notifier, user: Users, payload: OrderCreateIn) -> OrderOutcome:
    data = validate_order_request(payload)

    order = build_order(user, data, config_settings.GATEWAY_CURRENCY)
    await repo.create_order(session, order)
    # the audit record must exist before the gateway sees anything
    await session.commit()
    order_id = order.id
    logger.info(
        "orders.create.persisted",
        extra={"order_id": order_id, "payment_method": order.payment_method,
               "is_subscription": order.is_subscription, "card_last4": data.card_last4},
    )

    if order.payment_method == PaymentMethod.COD.value:
        notifier.notify(notify.ORDER_PLACED, user.email, notify.order_context(order))
        return OrderOutcome(order=order, status_code=201)

    if order.is_subscription:
        from cravecrafted.orders.subscriptions import start_subscription
        return await start_subscription(session, gateway, notifier, user, order, data)

    try:
        pi = await gateway.create_and_confirm_payment_intent(
            amount=order.total_price,
            currency=order.currency,
            payment_method=data.payment_token,
            metadata={"order_id": str(order.public_id), "user_id": str(user.public_id)},
            idempotency_key=f"order-{order.public_id}-pi",
        )
    except GatewayError as exc:
        failed = await record_gateway_failure(session, order_id, exc)
        notifier.notify(notify.PAYMENT_FAILED, user.email, notify.order_context(failed, reason=exc.message))
        raise_for_gateway_error(exc, failed)

    outcome = await run_with_conflict_retry(session, apply_payment_intent_result, order_id, pi, actor="gateway")
    order = outcome.order
    if order.is_paid:
        notifier.notify(notify.PAYMENT_CONFIRMED, user.email, notify.order_context(order))
    elif order.status == OrderStatus.PAYMENT_FAILED.value:
        notifier.notify(notify.PAYMENT_FAILED, user.email, notify.order_context(order))
        raise PaymentFailedError(
            "Payment failed, please try again or use another payment method",
            details={"order_id": str(order.public_id), "order_status": order.status,
                     "payment_intent_status": order.payment_intent_status},
        )
    else:
        notifier.notify(notify.ORDER_PLACED, user.email, notify.order_context(order))
    return outcome


async def apply_payment_intent_result(session, order_id: int, pi: Dict[str, Any], actor: str) -> OrderOutcome:
    order = await repo.find_by_id(session, order_id)
    if order is None:
        raise OrderNotFoundError("Order not found")

    pi_status = pi.get("status")
    order.payment_intent_id = pi.get("id")
    order.payment_intent_status = pi_status

    if pi_status == "succeeded":
        await mark_paid(session, order, payment_result_from_intent(pi), note="Payment confirmed", actor=actor)
        return OrderOutcome(order=order, status_code=201)

    if pi_status in ("requires_action", "requires_confirmation"):
        # customer has to authenticate, the webhook or confirm-payment finishes the job
        order.payment_intent_client_secret = pi.get("client_secret")
        await repo.save_order(session, order)
        return OrderOutcome(
            order=order, status_code=201,
            extra={"requires_action": True, "client_secret": pi.get("client_secret")},
        )

    if not order.is_paid and order.status != OrderStatus.PAYMENT_FAILED.value:
        last_error = pi.get("last_payment_error") or {}
        order.payment_error = {"message": last_error.get("message"), "code": last_error.get("code"),
                               "decline_code": last_error.get("decline_code"), "pi_status": pi_status}
        transition(order, OrderStatus.PAYMENT_FAILED.value, note=f"Payment {pi_status}", actor=actor)
    await repo.save_order(session, order)
    return OrderOutcome(order=order, status_code=201)


async def mark_paid(session, order: Orders, payment_result: Dict[str, Any], note: str, actor: str) -> bool:
    """Conditional is_paid claim plus the Payment_Confirmed transition, False when already paid."""
    if order.is_paid:
        await repo.save_order(session, order)
        return False
    paid_at = now()
    claimed = await repo.claim_paid(session, order.id, paid_at)
    if not claimed:
        # another writer got there first, our snapshot is stale
        raise ConcurrencyConflict(details={"order_id": str(order.public_id)})
    order.is_paid = True
    order.paid_at = paid_at
    order.payment_result = payment_result
    order.payment_error = None
    if order.status in (OrderStatus.PENDING.value, OrderStatus.PAYMENT_FAILED.value):
        transition(order, OrderStatus.PAYMENT_CONFIRMED.value, note=note, actor=actor)
    await repo.save_order(session, order)
    return True


def payment_result_from_intent(pi: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": pi.get("id"),
        "status": pi.get("status"),
        "amount": pi.get("amount_received", pi.get("amount")),
        "currency": pi.get("currency"),
        "payment_method": pi.get("payment_method"),
        "update_time": now().isoformat(),
    }


async def record_gateway_failure(session, order_id: int, exc: GatewayError) -> Orders:
    async def _apply(session, order_id):
        order = await repo.find_by_id(session, order_id)
        order.payment_error = exc.to_record()
        if exc.payment_intent_id:
            order.payment_intent_id = exc.payment_intent_id
        if not order.is_paid and order.status != OrderStatus.PAYMENT_FAILED.value:
            transition(order, OrderStatus.PAYMENT_FAILED.value, note=exc.message, actor="gateway")
        if order.is_subscription and order.subscription_status is None:
            order.subscription_status = SubscriptionStatus.PAYMENT_FAILED.value
        await repo.save_order(session, order)
        return order

    order = await run_with_conflict_retry(session, _apply, order_id)
    logger.warning(
        "orders.create.gateway_failed",
        extra={"order_id": order_id, "error_type": type(exc).__name__, "error_code": exc.code,
               "decline_code": exc.decline_code},
    )
    return order


def raise_for_gateway_error(exc: GatewayError, order: Orders):
    details = {"order_id": str(order.public_id), "order_status": order.status}
    if isinstance(exc, GatewayDeclineError):
        code = exc.decline_code or exc.code or "generic_decline"
        message = DECLINE_MESSAGES.get(code) or DECLINE_MESSAGES.get(exc.code or "") or DECLINE_MESSAGES["generic_decline"]
        raise PaymentDeclinedError(message, details={**details, "decline_code": code}) from exc
    if isinstance(exc, GatewayTransientError):
        raise GatewayUnavailableError(
            "Payment provider is temporarily unavailable, please try again", details=details) from exc
    if isinstance(exc, GatewayInvalidRequestError):
        raise PaymentFailedError("Payment could not be processed, please try again", details=details) from exc
    raise PaymentFailedError("Payment failed, please try again or use another payment method", details=details) from exc


# ---------------------------------------------------------------------------------------------
# order actions

async def confirm_payment(session, gateway: PaymentGateway, notifier, user: Users, order_ref, body: ConfirmPaymentIn) -> Orders:
    order = await load_order(session, order_ref)
    ensure_owner_or_admin(order, user)
    if order.payment_intent_id and body.payment_intent_id != order.payment_intent_id:
        raise OrderValidationError("Payment intent does not belong to this order")
    if order.is_paid:
        return order

    try:
        pi = await gateway.retrieve_payment_intent(body.payment_intent_id)
    except GatewayError as exc:
        raise_for_gateway_error(exc, order)
    if (pi.get("metadata") or {}).get("order_id") not in (None, str(order.public_id)):
        raise OrderValidationError("Payment intent does not belong to this order")

    outcome = await run_with_conflict_retry(session, apply_payment_intent_result, order.id, pi, actor=actor_label(user))
    if outcome.order.is_paid:
        notifier.notify(notify.PAYMENT_CONFIRMED, user.email, notify.order_context(outcome.order))
    return outcome.order


async def confirm_cod(session, user: Users, order_ref, body: ConfirmCodIn) -> Orders:
    async def _apply(session, order_ref):
        order = await load_order(session, order_ref)
        if order.payment_method != PaymentMethod.COD.value:
            raise OrderStateError("Only cash on delivery orders can be confirmed this way")
        if order.status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
            raise OrderStateError(f"Order in status {order.status} can not be marked paid")
        if order.is_paid:
            raise OrderStateError("Order is already paid")
        collected = to_minor_units(body.collected_amount) if body.collected_amount is not None else order.total_price
        result = {"method": PaymentMethod.COD.value, "status": "collected", "amount": collected,
                  "currency": order.currency, "collected_by": actor_label(user), "update_time": now().isoformat()}
        await mark_paid(session, order, result, note=body.note or "Cash collected", actor=actor_label(user))
        return order

    order = await run_with_conflict_retry(session, _apply, order_ref)
    logger.info("orders.cod.confirmed", extra={"order_id": order.id})
    return order


async def update_status(session, gateway: PaymentGateway, notifier, user: Users, order_ref, body: StatusUpdateIn) -> Orders:
    order = await load_order(session, order_ref)
    new_status = check_status_update(order, body.status)
    if new_status == OrderStatus.CANCELLED.value:
        return await cancel_order(session, gateway, notifier, user, order_ref, ReasonIn(reason=body.note))

    async def _apply(session, order_ref):
        order = await load_order(session, order_ref)
        check_status_update(order, new_status)
        transition(order, new_status, note=body.note, actor=actor_label(user), user_id=user.id)
        await repo.save_order(session, order)
        return order

    order = await run_with_conflict_retry(session, _apply, order_ref)
    logger.info("orders.status.updated", extra={"order_id": order.id, "order_status": new_status})
    return order


async def update_tracking(session, user: Users, order_ref, body: TrackingUpdateIn) -> Orders:
    async def _apply(session, order_ref):
        order = await load_order(session, order_ref)
        if order.status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
            raise OrderStateError(f"Tracking can not be updated for {order.status} orders")
        tracking = dict(order.tracking or {})
        patch = body.model_dump(exclude_none=True, mode="json")
        tracking.update(patch)
        tracking["updated_at"] = now().isoformat()
        tracking["updated_by"] = actor_label(user)
        order.tracking = tracking
        await repo.save_order(session, order)
        return order

    return await run_with_conflict_retry(session, _apply, order_ref)


async def release_authorisation(gateway: PaymentGateway, order: Orders) -> None:
    """Cancel a pending gateway authorisation, a gateway object that no longer exists is fine."""
    if not order.payment_intent_id or order.is_paid:
        return
    if order.payment_intent_status and order.payment_intent_status not in RELEASABLE_INTENT_STATUSES:
        return
    await gateway.cancel_payment_intent(order.payment_intent_id)


async def cancel_order(session, gateway: PaymentGateway, notifier, user: Users, order_ref, body: ReasonIn) -> Orders:
    order = await load_order(session, order_ref)
    ensure_owner_or_admin(order, user)
    ensure_cancellable(order)

    try:
        await release_authorisation(gateway, order)
        if order.is_subscription and order.gateway_subscription_id and order.anchor_order_id is None:
            await gateway.cancel_subscription(order.gateway_subscription_id)
    except GatewayError as exc:
        logger.warning("orders.cancel.gateway_failed", extra={"order_id": order.id, "error_type": type(exc).__name__})
        raise_for_gateway_error(exc, order)

    reason = body.reason or "Cancelled by " + ("admin" if is_admin(user) else "customer")

    async def _apply(session, order_ref):
        order = await load_order(session, order_ref)
        ensure_cancellable(order)
        if order.payment_intent_id and not order.is_paid:
            order.payment_intent_status = "canceled"
        if order.is_subscription and order.anchor_order_id is None and order.subscription_status not in (
                None, SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value):
            order.subscription_status = SubscriptionStatus.CANCELLED.value
            order.next_billing_date = None
        transition(order, OrderStatus.CANCELLED.value, note=reason, actor=actor_label(user), user_id=user.id)
        await repo.save_order(session, order)
        return order

    order = await run_with_conflict_retry(session, _apply, order_ref)
    logger.info("orders.cancelled", extra={"order_id": order.id})
    email = user.email if order.user_id == user.id else await repo.get_user_email(session, order.user_id)
    notifier.notify(notify.ORDER_CANCELLED, email, notify.order_context(order, reason=reason))
    return order


async def request_return(session, user: Users, order_ref, body: ReasonIn) -> Orders:
    async def _apply(session, order_ref):
        order = await load_order(session, order_ref)
        if order.user_id != user.id:
            raise OrderAuthorizationError("Only the customer who placed the order can return it")
        if order.status != OrderStatus.DELIVERED.value:
            raise OrderStateError("Only delivered orders can be returned", details={"status": order.status})
        if not (body.reason or "").strip():
            raise OrderValidationError("A return reason is required")
        order.return_reason = body.reason
        order.return_requested_at = now()
        transition(order, OrderStatus.RETURNED.value, note=body.reason, actor=actor_label(user))
        await repo.save_order(session, order)
        return order

    return await run_with_conflict_retry(session, _apply, order_ref)


async def refund_order(session, user: Users, order_ref, body: RefundIn) -> Orders:
    async def _apply(session, order_ref):
        order = await load_order(session, order_ref)
        if order.status not in REFUNDABLE_STATUSES:
            raise OrderStateError(f"Order in status {order.status} can not be refunded", details={"status": order.status})
        if not order.is_paid:
            raise OrderStateError("Only paid orders can be refunded")
        amount = to_minor_units(body.refund_amount) if body.refund_amount is not None else order.total_price
        if amount <= 0 or amount > order.total_price:
            raise OrderValidationError(
                "Refund amount must be positive and not exceed the order total",
                details={"total_price": from_minor_units(order.total_price)},
            )
        order.refund_amount = amount
        order.refunded_at = now()
        transition(order, OrderStatus.REFUNDED.value, note=body.note or "Refund issued", actor=actor_label(user))
        await repo.save_order(session, order)
        return order

    order = await run_with_conflict_retry(session, _apply, order_ref)
    logger.info("orders.refunded", extra={"order_id": order.id, "refund_amount": order.refund_amount})
    return order


async def delete_order(session, gateway: PaymentGateway, user: Users, order_ref) -> str:
    order = await load_order(session, order_ref)
    ensure_deletable(order)
    if order.is_subscription and order.anchor_order_id is None:
        spawned = await repo.count_cycle_orders(session, order.id)
        if spawned:
            # cycle orders reference the anchor, it stays as long as they do
            raise OrderStateError(
                "Subscription order with billing cycle orders can not be deleted",
                details={"cycle_orders": spawned},
            )
    try:
        await release_authorisation(gateway, order)
    except GatewayError as exc:
        raise_for_gateway_error(exc, order)
    public_id = str(order.public_id)
    await repo.delete_order(session, order)
    await session.commit()
    logger.info("orders.deleted", extra={"order_id": order.id, "deleted_by": actor_label(user)})
    return public_id
