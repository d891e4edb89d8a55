import time
import pytest
from sqlalchemy import select
from cravecrafted.common.custom_exceptions import ConcurrencyConflict
from cravecrafted.db.connection import async_session
from cravecrafted.orders import repository as repo
from cravecrafted.orders import webhooks
from cravecrafted.schema.full_schema import PaymentWebhookEvent
from tests.conftest import (
    WEBHOOK_URL, auth_headers, make_event, order_payload, post_event, signed_webhook, subscription_payload, url_prefix,
)


async def pending_card_order(ac, user, fake_gateway):
    fake_gateway.intent_status = "requires_action"
    r = await ac.post(f"{url_prefix}/orders", json=order_payload(), headers=auth_headers(user))
    assert r.status_code == 201, r.text
    fake_gateway.intent_status = "succeeded"
    return r.json()["data"]


async def active_subscription(ac, user, **sub_overrides):
    r = await ac.post(f"{url_prefix}/orders", json=subscription_payload(**sub_overrides), headers=auth_headers(user))
    assert r.status_code == 201, r.text
    return r.json()["data"]


def intent(data, **extra):
    obj = {"id": data["payment_intent_id"], "object": "payment_intent", "amount": 2000, "amount_received": 2000,
           "currency": "usd", "status": "succeeded", "metadata": {"order_id": data["id"]}}
    obj.update(extra)
    return obj


def renewal_invoice(subscription_id, invoice_id, *, billing_reason="subscription_cycle", amount=2000):
    return {"id": invoice_id, "object": "invoice", "subscription": subscription_id, "billing_reason": billing_reason,
            "status": "paid", "amount_paid": amount, "amount_due": amount, "payment_intent": f"pi_{invoice_id}",
            "status_transitions": {"paid_at": int(time.time())}}


async def fetch_order(public_id):
    async with async_session() as session:
        return await repo.find_by_public_id(session, public_id)


async def ledger_row(event_id):
    async with async_session() as session:
        res = await session.execute(select(PaymentWebhookEvent).where(PaymentWebhookEvent.provider_event_id == event_id))
        return res.scalar_one()


@pytest.mark.asyncio
async def test_payment_succeeded_marks_order_paid(ac_client, buyer, fake_gateway, notifier):
    data = await pending_card_order(ac_client, buyer, fake_gateway)
    event = make_event("payment_intent.succeeded", intent(data), "evt_paid_1")

    r = await post_event(ac_client, event)
    assert r.status_code == 200, r.text
    assert r.json()["data"]["event_id"] == "evt_paid_1"

    order = await fetch_order(data["id"])
    assert order.is_paid is True
    assert order.status == "Payment_Confirmed"
    assert "payment_confirmed" in notifier.kinds()

    row = await ledger_row("evt_paid_1")
    assert row.status == "processed"
    assert row.processed_at is not None
    assert row.order_id == order.id


@pytest.mark.asyncio
async def test_duplicate_delivery_is_acknowledged_once(ac_client, buyer, fake_gateway):
    data = await pending_card_order(ac_client, buyer, fake_gateway)
    event = make_event("payment_intent.succeeded", intent(data), "evt_dup")

    first = await post_event(ac_client, event)
    second = await post_event(ac_client, event)
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["data"]["note"] == "already processed"

    # same payment reported under a fresh event id is still a no-op
    third = await post_event(ac_client, make_event("payment_intent.succeeded", intent(data), "evt_dup_2"))
    assert third.json()["data"]["note"] == "already_paid"

    order = await fetch_order(data["id"])
    assert [e.status for e in order.status_history].count("Payment_Confirmed") == 1
    row = await ledger_row("evt_dup")
    assert row.attempts == 1


@pytest.mark.asyncio
async def test_lookup_by_payment_intent_id(ac_client, buyer, fake_gateway):
    data = await pending_card_order(ac_client, buyer, fake_gateway)
    r = await post_event(ac_client, make_event("payment_intent.succeeded", intent(data, metadata={})))
    assert r.status_code == 200
    assert (await fetch_order(data["id"])).is_paid is True


@pytest.mark.asyncio
async def test_unknown_order_is_ignored(ac_client, buyer):
    obj = {"id": "pi_nowhere", "status": "succeeded", "metadata": {"order_id": "0190b3a4-0000-7000-8000-000000000000"}}
    r = await post_event(ac_client, make_event("payment_intent.succeeded", obj, "evt_miss"))
    assert r.status_code == 200
    assert r.json()["data"]["note"] == "lookup_miss"
    assert (await ledger_row("evt_miss")).status == "ignored"


@pytest.mark.asyncio
async def test_payment_failed_on_pending_order(ac_client, buyer, fake_gateway, notifier):
    data = await pending_card_order(ac_client, buyer, fake_gateway)
    err = {"message": "Your card has insufficient funds.", "code": "card_declined", "decline_code": "insufficient_funds"}
    r = await post_event(ac_client, make_event(
        "payment_intent.payment_failed", intent(data, status="requires_payment_method", last_payment_error=err)))
    assert r.status_code == 200

    order = await fetch_order(data["id"])
    assert order.status == "Payment_Failed"
    assert order.is_paid is False
    assert order.payment_error["decline_code"] == "insufficient_funds"
    assert "payment_failed" in notifier.kinds()


@pytest.mark.asyncio
async def test_late_failure_never_downgrades_paid_order(ac_client, buyer, fake_gateway):
    data = await pending_card_order(ac_client, buyer, fake_gateway)
    await post_event(ac_client, make_event("payment_intent.succeeded", intent(data)))
    r = await post_event(ac_client, make_event("payment_intent.payment_failed", intent(data, status="requires_payment_method")))

    assert r.json()["data"]["note"] == "already_paid"
    order = await fetch_order(data["id"])
    assert order.status == "Payment_Confirmed"
    assert order.is_paid is True


@pytest.mark.asyncio
async def test_payment_canceled_cancels_pending_order(ac_client, buyer, fake_gateway):
    data = await pending_card_order(ac_client, buyer, fake_gateway)
    r = await post_event(ac_client, make_event(
        "payment_intent.canceled", intent(data, status="canceled", cancellation_reason="abandoned")))
    assert r.status_code == 200

    order = await fetch_order(data["id"])
    assert order.status == "Cancelled"
    assert order.cancellation_reason == "abandoned"
    assert order.cancelled_at is not None


@pytest.mark.asyncio
async def test_renewal_invoice_spawns_cycle_order(ac_client, buyer, notifier):
    anchor = await active_subscription(ac_client, buyer)
    sub_id = anchor["gateway_subscription_id"]
    first_due = anchor["next_billing_date"]

    r = await post_event(ac_client, make_event("invoice.payment_succeeded", renewal_invoice(sub_id, "in_cycle_2")))
    assert r.status_code == 200, r.text
    assert r.json()["data"]["note"] == "cycle_2"

    stored = await fetch_order(anchor["id"])
    assert stored.current_billing_cycle == 2
    assert stored.subscription_status == "active"
    assert stored.next_billing_date is not None
    assert stored.next_billing_date.isoformat()[:10] > first_due[:10]
    cycles = sorted(p.billing_cycle for p in stored.payment_history if p.status == "succeeded")
    assert cycles == [1, 2]

    async with async_session() as session:
        spawned = await repo.cycle_order(session, stored.id, 2)
    assert spawned is not None
    assert spawned.status == "Payment_Confirmed"
    assert spawned.is_paid is True
    assert spawned.total_price == stored.total_price
    assert spawned.subscription_status is None
    assert [it.product_id for it in spawned.items] == ["prod-1"]
    assert "subscription_renewed" in notifier.kinds()

    # same invoice under a new event id books nothing
    again = await post_event(ac_client, make_event("invoice.paid", renewal_invoice(sub_id, "in_cycle_2")))
    assert again.json()["data"]["note"] == "renewal_not_recorded"
    assert (await fetch_order(anchor["id"])).current_billing_cycle == 2


@pytest.mark.asyncio
async def test_initial_invoice_is_not_booked_twice(ac_client, buyer):
    anchor = await active_subscription(ac_client, buyer)
    invoice = renewal_invoice(anchor["gateway_subscription_id"], "in_first", billing_reason="subscription_create")
    r = await post_event(ac_client, make_event("invoice.paid", invoice))

    assert r.json()["data"]["note"] == "initial_invoice_recorded"
    stored = await fetch_order(anchor["id"])
    assert stored.current_billing_cycle == 1
    assert len(stored.payment_history) == 1


@pytest.mark.asyncio
async def test_initial_invoice_settles_a_failed_subscription(ac_client, buyer, fake_gateway, notifier):
    fake_gateway.subscription_status = "incomplete"
    anchor = await active_subscription(ac_client, buyer)
    assert anchor["status"] == "Payment_Failed"
    assert anchor["subscription_status"] == "payment_failed"

    invoice = renewal_invoice(anchor["gateway_subscription_id"], "in_first", billing_reason="subscription_create")
    r = await post_event(ac_client, make_event("invoice.paid", invoice))
    assert r.status_code == 200, r.text
    assert r.json()["data"]["note"] == "initial_invoice_recovered"

    stored = await fetch_order(anchor["id"])
    assert stored.is_paid is True
    assert stored.paid_at is not None
    assert stored.status == "Payment_Confirmed"
    assert stored.subscription_status == "active"
    assert stored.next_billing_date is not None
    assert stored.current_billing_cycle == 1
    assert [(p.billing_cycle, p.status) for p in stored.payment_history] == [(1, "succeeded")]
    assert [e.status for e in stored.status_history] == ["Pending", "Payment_Failed", "Payment_Confirmed"]
    assert "payment_confirmed" in notifier.kinds()

    # replay leaves it alone
    again = await post_event(ac_client, make_event("invoice.paid", invoice))
    assert again.json()["data"]["note"] == "initial_invoice_recorded"


@pytest.mark.asyncio
async def test_last_cycle_expires_subscription(ac_client, buyer):
    anchor = await active_subscription(ac_client, buyer, totalBillingCycles=2)
    sub_id = anchor["gateway_subscription_id"]

    await post_event(ac_client, make_event("invoice.paid", renewal_invoice(sub_id, "in_c2")))
    extra = await post_event(ac_client, make_event("invoice.paid", renewal_invoice(sub_id, "in_c3")))
    assert extra.json()["data"]["note"] == "renewal_not_recorded"

    stored = await fetch_order(anchor["id"])
    assert stored.current_billing_cycle == 2
    assert stored.subscription_status == "expired"
    assert stored.next_billing_date is None

    # the provider ends a bounded subscription itself, that must not flip it to cancelled
    deleted = await post_event(ac_client, make_event("customer.subscription.deleted", {"id": sub_id, "status": "canceled"}))
    assert deleted.json()["data"]["note"] == "subscription_expired"
    assert (await fetch_order(anchor["id"])).subscription_status == "expired"


@pytest.mark.asyncio
async def test_failed_renewal_then_recovery(ac_client, buyer, notifier):
    anchor = await active_subscription(ac_client, buyer)
    sub_id = anchor["gateway_subscription_id"]
    failed_invoice = dict(renewal_invoice(sub_id, "in_retry"), status="open", amount_paid=0)

    r = await post_event(ac_client, make_event("invoice.payment_failed", failed_invoice))
    assert r.status_code == 200
    dup = await post_event(ac_client, make_event("invoice.payment_failed", failed_invoice))
    assert dup.json()["data"]["note"] == "failure_recorded"

    stored = await fetch_order(anchor["id"])
    assert stored.subscription_status == "payment_failed"
    assert stored.status == "Payment_Failed"
    assert [p.status for p in stored.payment_history].count("failed") == 1
    assert "subscription_payment_failed" in notifier.kinds()

    await post_event(ac_client, make_event("invoice.paid", renewal_invoice(sub_id, "in_retry")))
    stored = await fetch_order(anchor["id"])
    assert stored.subscription_status == "active"
    assert stored.status == "Payment_Confirmed"
    assert stored.current_billing_cycle == 2


@pytest.mark.asyncio
async def test_subscription_deleted_cancels_anchor(ac_client, buyer):
    anchor = await active_subscription(ac_client, buyer)
    event = make_event("customer.subscription.deleted", {"id": anchor["gateway_subscription_id"], "status": "canceled"})

    r = await post_event(ac_client, event)
    assert r.status_code == 200
    stored = await fetch_order(anchor["id"])
    assert stored.subscription_status == "cancelled"
    assert stored.status == "Cancelled"

    again = await post_event(ac_client, make_event("customer.subscription.deleted", event["data"]["object"]))
    assert again.json()["data"]["note"] == "already_cancelled"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(ac_client):
    r = await post_event(ac_client, make_event("charge.dispute.created", {"id": "dp_1"}, "evt_other"))
    assert r.status_code == 200
    assert r.json()["data"]["note"] == "unhandled_event_type"
    assert (await ledger_row("evt_other")).status == "ignored"


@pytest.mark.asyncio
async def test_missing_event_id_is_acknowledged(ac_client):
    r = await post_event(ac_client, {"type": "payment_intent.succeeded", "data": {"object": {}}})
    assert r.status_code == 200
    assert r.json()["data"]["note"] == "ignored: missing event id"


@pytest.mark.asyncio
@pytest.mark.parametrize("tamper", ["secret", "body", "header", "stale"])
async def test_bad_signatures_are_rejected(ac_client, tamper):
    event = make_event("payment_intent.succeeded", {"id": "pi_x"}, "evt_sig")
    if tamper == "secret":
        body, headers = signed_webhook(event, secret="whsec_other")
    elif tamper == "stale":
        body, headers = signed_webhook(event, timestamp=int(time.time()) - 3600)
    else:
        body, headers = signed_webhook(event)
        if tamper == "body":
            body = body.replace(b"pi_x", b"pi_y")
        else:
            headers.pop("Stripe-Signature")

    r = await ac_client.post(WEBHOOK_URL, content=body, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_SIGNATURE"

    async with async_session() as session:
        rows = (await session.execute(select(PaymentWebhookEvent))).scalars().all()
    assert rows == []


@pytest.mark.asyncio
async def test_transient_failure_asks_for_redelivery(ac_client, buyer, fake_gateway, monkeypatch):
    data = await pending_card_order(ac_client, buyer, fake_gateway)
    event = make_event("payment_intent.succeeded", intent(data), "evt_flaky")

    async def conflicted(session, event, ledger_id=None):
        raise ConcurrencyConflict()

    with monkeypatch.context() as m:
        m.setattr(webhooks, "reconcile_event", conflicted)
        r = await post_event(ac_client, event)
    assert r.status_code == 503
    assert r.json()["error"]["code"] == "WEBHOOK_RETRY"

    row = await ledger_row("evt_flaky")
    assert row.status == "errored"
    assert row.processed_at is None
    assert (await fetch_order(data["id"])).is_paid is False

    retried = await post_event(ac_client, event)
    assert retried.status_code == 200
    assert (await fetch_order(data["id"])).is_paid is True
    row = await ledger_row("evt_flaky")
    assert row.status == "processed"
    assert row.attempts == 2


@pytest.mark.asyncio
async def test_permanent_failure_is_recorded_and_acknowledged(ac_client, buyer, fake_gateway, monkeypatch):
    data = await pending_card_order(ac_client, buyer, fake_gateway)
    event = make_event("payment_intent.succeeded", intent(data), "evt_broken")

    async def broken(session, event, ledger_id=None):
        raise KeyError("object")

    monkeypatch.setattr(webhooks, "reconcile_event", broken)
    r = await post_event(ac_client, event)
    assert r.status_code == 200
    assert r.json()["data"]["note"] == "error recorded"

    row = await ledger_row("evt_broken")
    assert row.status == "errored"
    assert row.processed_at is not None
    assert "KeyError" in row.last_error
