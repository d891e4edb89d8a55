import os

# settings are read at import time, point everything at throwaway values first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["GATEWAY_SECRET_KEY"] = "sk_test_dummy"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["GATEWAY_MAX_RETRIES"] = "1"
os.environ["BILLING_POLL_ENABLED"] = "false"
os.environ["METRICS_ENABLED"] = "false"
os.environ["SMTP_HOST"] = ""
os.environ["ENV"] = "dev"

import json
import time
from typing import Any, Dict, List, Optional
import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient
from sqlmodel import SQLModel
from uuid6 import uuid7

from cravecrafted.db.connection import async_engine, async_session
from cravecrafted.main import app
from cravecrafted.notifications.email import get_notifier
from cravecrafted.orders.gateway import (
    GatewayDeclineError, GatewayNotFoundError, GatewayTransientError, get_gateway, sign_payload,
)
from cravecrafted.schema.full_schema import UserRole, Users
from cravecrafted.user.dependencies import create_access_token

url_prefix = "/api/v1"
WEBHOOK_URL = "/api/v1/webhooks/gateway"

DECLINE_TOKENS = {
    "pm_card_chargeDeclined": "generic_decline",
    "pm_card_chargeDeclinedInsufficientFunds": "insufficient_funds",
    "pm_card_chargeDeclinedExpiredCard": "expired_card",
}


class FakeGateway:
    """In-memory stand-in for PaymentGateway, records every call and mimics the gateway's answers."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.idempotency_keys: Dict[str, Optional[str]] = {}
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.invoices: Dict[str, List[Dict[str, Any]]] = {}
        self.intent_status = "succeeded"
        self.subscription_status = "active"
        self.fail_with: Optional[Exception] = None
        self._seq = 0

    def _id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:04d}"

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def create_and_confirm_payment_intent(self, amount, currency, payment_method, metadata, *,
                                                customer=None, idempotency_key=None):
        self.calls.append(("create_and_confirm_payment_intent", amount, payment_method, idempotency_key))
        self._maybe_fail()
        pi_id = self._id("pi")
        if payment_method in DECLINE_TOKENS:
            raise GatewayDeclineError("Your card was declined.", code="card_declined",
                                      decline_code=DECLINE_TOKENS[payment_method], http_status=402,
                                      payment_intent_id=pi_id)
        pi = {"id": pi_id, "object": "payment_intent", "amount": amount, "amount_received": amount,
              "currency": currency, "status": self.intent_status, "metadata": dict(metadata),
              "payment_method": payment_method, "client_secret": f"{pi_id}_secret"}
        self.intents[pi_id] = pi
        return pi

    async def retrieve_payment_intent(self, payment_intent_id):
        self.calls.append(("retrieve_payment_intent", payment_intent_id))
        if payment_intent_id not in self.intents:
            raise GatewayNotFoundError("No such payment_intent", code="resource_missing", http_status=404)
        return self.intents[payment_intent_id]

    async def cancel_payment_intent(self, payment_intent_id):
        self.calls.append(("cancel_payment_intent", payment_intent_id))
        pi = self.intents.get(payment_intent_id)
        if pi is None:
            return None
        pi["status"] = "canceled"
        return pi

    async def create_or_get_customer(self, email, *, name=None, metadata=None):
        self.calls.append(("create_or_get_customer", email))
        self._maybe_fail()
        return {"id": "cus_test", "email": email}

    async def attach_payment_method(self, customer_id, payment_method_id, *, idempotency_key=None):
        self.calls.append(("attach_payment_method", customer_id, payment_method_id))
        self.idempotency_keys["attach_payment_method"] = idempotency_key
        if payment_method_id in DECLINE_TOKENS:
            raise GatewayDeclineError("Your card was declined.", code="card_declined",
                                      decline_code=DECLINE_TOKENS[payment_method_id], http_status=402)
        return {"id": payment_method_id}

    async def create_recurring_price(self, amount, interval, interval_count, product_meta, *, currency=None,
                                     idempotency_key=None):
        self.calls.append(("create_recurring_price", amount, interval, interval_count))
        self.idempotency_keys["create_recurring_price"] = idempotency_key
        return {"id": self._id("price"), "unit_amount": amount}

    async def create_subscription(self, customer_id, price_id, metadata, cancel_at=None, *, idempotency_key=None):
        self.calls.append(("create_subscription", customer_id, price_id, cancel_at, idempotency_key))
        sub_id = self._id("sub")
        pi_id = self._id("pi")
        return {
            "id": sub_id, "status": self.subscription_status, "customer": customer_id,
            "metadata": dict(metadata), "cancel_at": cancel_at,
            "latest_invoice": {"id": self._id("in"), "payment_intent": {"id": pi_id, "status": "succeeded"}},
        }

    async def update_subscription(self, subscription_id, patch):
        self.calls.append(("update_subscription", subscription_id, patch))
        return {"id": subscription_id}

    async def pause_subscription(self, subscription_id):
        self.calls.append(("pause_subscription", subscription_id))
        self._maybe_fail()
        return {"id": subscription_id, "pause_collection": {"behavior": "void"}}

    async def resume_subscription(self, subscription_id):
        self.calls.append(("resume_subscription", subscription_id))
        return {"id": subscription_id, "pause_collection": None}

    async def cancel_subscription(self, subscription_id):
        self.calls.append(("cancel_subscription", subscription_id))
        return {"id": subscription_id, "status": "canceled"}

    async def retrieve_subscription(self, subscription_id):
        return {"id": subscription_id, "status": "active"}

    async def list_invoices(self, subscription_id, *, status=None, limit=100):
        self.calls.append(("list_invoices", subscription_id, status))
        self._maybe_fail()
        return [i for i in self.invoices.get(subscription_id, []) if status is None or i.get("status") == status]

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]


class RecordingNotifier:
    def __init__(self):
        self.sent: List[tuple] = []

    def notify(self, kind, to, context):
        self.sent.append((kind, to, context))

    def kinds(self) -> List[str]:
        return [k for k, _, _ in self.sent]


@pytest.fixture
async def db():
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest.fixture
async def db_session(db):
    async with async_session() as session:
        yield session


async def _make_user(email: str, role: str = UserRole.BUYER.value, name: str = "Test User") -> Users:
    async with async_session() as session:
        user = Users(public_id=uuid7(), email=email, name=name, role=role)
        session.add(user)
        await session.commit()
        return user


@pytest.fixture
async def buyer(db) -> Users:
    return await _make_user("buyer@example.com")


@pytest.fixture
async def other_buyer(db) -> Users:
    return await _make_user("other@example.com", name="Other Buyer")


@pytest.fixture
async def admin(db) -> Users:
    return await _make_user("admin@example.com", role=UserRole.ADMIN.value, name="Admin")


def auth_headers(user: Users) -> Dict[str, str]:
    token = create_access_token(user.public_id, roles=[user.role])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def ac_client(db, fake_gateway, notifier):
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    try:
        async with LifespanManager(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                yield ac
    finally:
        app.dependency_overrides.clear()


def order_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "orderItems": [{"product": "prod-1", "name": "Choco box", "price": 10, "quantity": 2}],
        "shippingAddress": {"address": "1 Main St", "city": "Springfield", "postalCode": "12345", "country": "US"},
        "paymentMethod": "card",
        "itemsPrice": 20,
        "taxPrice": 0,
        "shippingPrice": 0,
        "totalPrice": 20,
        "cardDetails": {"number": "4242 4242 4242 4242", "expMonth": 12, "expYear": 2030, "cvc": "123"},
    }
    payload.update(overrides)
    return payload


def subscription_payload(**sub_overrides) -> Dict[str, Any]:
    sub = {"subscriptionType": "premium", "name": "Monthly treats", "recurrence": "monthly",
           "billingCycle": 1, "totalBillingCycles": 3}
    sub.update(sub_overrides)
    return order_payload(isSubscription=True, subscription=sub)


def signed_webhook(event: Dict[str, Any], secret: str = "whsec_test", timestamp: Optional[int] = None):
    body = json.dumps(event).encode()
    ts = timestamp if timestamp is not None else int(time.time())
    sig = sign_payload(body, secret, ts)
    return body, {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}


def make_event(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> Dict[str, Any]:
    return {"id": event_id or f"evt_{uuid7().hex[:16]}", "type": event_type, "data": {"object": obj}}


async def post_event(ac: AsyncClient, event: Dict[str, Any]):
    body, headers = signed_webhook(event)
    return await ac.post(WEBHOOK_URL, content=body, headers=headers)
