import json
import time
from urllib.parse import parse_qsl
import httpx
import pytest
from cravecrafted.common.circuit_breaker import CircuitBreaker
from cravecrafted.common.custom_exceptions import WebhookSignatureError
from cravecrafted.orders.gateway import (
    GatewayDeclineError, GatewayInvalidRequestError, GatewayNotFoundError, GatewayTransientError, PaymentGateway,
    flatten_form, sign_payload, verify_webhook_signature,
)


def make_gateway(handler, **kwargs):
    kwargs.setdefault("max_retries", 3)
    return PaymentGateway(api_base="https://gateway.test/v1", secret_key="sk_test_123", backoff_base=0.0,
                          transport=httpx.MockTransport(handler), **kwargs)


def form(request: httpx.Request):
    return dict(parse_qsl(request.content.decode()))


def test_flatten_form_nests_like_the_gateway():
    pairs = flatten_form({
        "amount": 2000,
        "confirm": True,
        "customer": None,
        "metadata": {"order_id": "abc"},
        "payment_method_types": ["card"],
        "items": [{"price": "price_1"}],
    })
    assert pairs == [
        ("amount", "2000"),
        ("confirm", "true"),
        ("metadata[order_id]", "abc"),
        ("payment_method_types[0]", "card"),
        ("items[0][price]", "price_1"),
    ]


@pytest.mark.asyncio
async def test_create_intent_sends_form_and_idempotency_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "pi_1", "status": "succeeded"})

    gw = make_gateway(handler)
    pi = await gw.create_and_confirm_payment_intent(2000, None, "pm_card_visa", {"order_id": "o-1"},
                                                     idempotency_key="order-o-1-pi")
    assert pi["id"] == "pi_1"

    req = seen[0]
    assert req.method == "POST"
    assert req.url.path == "/v1/payment_intents"
    assert req.headers["Authorization"] == "Bearer sk_test_123"
    assert req.headers["Idempotency-Key"] == "order-o-1-pi"
    body = form(req)
    assert body["amount"] == "2000"
    assert body["currency"] == "usd"
    assert body["confirm"] == "true"
    assert body["metadata[order_id]"] == "o-1"


@pytest.mark.asyncio
async def test_card_error_is_a_decline_and_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(402, json={"error": {
            "type": "card_error", "code": "card_declined", "decline_code": "insufficient_funds",
            "message": "Your card has insufficient funds.", "payment_intent": {"id": "pi_declined"},
        }})

    gw = make_gateway(handler)
    with pytest.raises(GatewayDeclineError) as info:
        await gw.create_and_confirm_payment_intent(2000, "usd", "pm_x", {})
    assert info.value.decline_code == "insufficient_funds"
    assert info.value.payment_intent_id == "pi_declined"
    assert info.value.to_record()["http_status"] == 402
    assert len(calls) == 1
    assert gw.circuit.state == "CLOSED"


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_surface_as_transient():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, json={"error": {"message": "try later"}})

    gw = make_gateway(handler)
    with pytest.raises(GatewayTransientError):
        await gw.retrieve_payment_intent("pi_1")
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_timeout_then_success():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={"id": "pi_1", "status": "processing"})

    gw = make_gateway(handler)
    pi = await gw.retrieve_payment_intent("pi_1")
    assert pi["status"] == "processing"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_open_circuit_fails_fast():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, json={})

    breaker = CircuitBreaker(name="gw-test", failure_threshold=2, recovery_timeout=60)
    gw = make_gateway(handler, max_retries=1, circuit=breaker)
    for _ in range(2):
        with pytest.raises(GatewayTransientError):
            await gw.retrieve_payment_intent("pi_1")
    assert breaker.state == "OPEN"

    with pytest.raises(GatewayTransientError) as info:
        await gw.retrieve_payment_intent("pi_1")
    assert info.value.code == "circuit_open"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_cancel_tolerates_missing_or_settled_intents():
    def handler(request):
        if "pi_gone" in request.url.path:
            return httpx.Response(404, json={"error": {"code": "resource_missing", "message": "No such payment_intent"}})
        return httpx.Response(400, json={"error": {"code": "payment_intent_unexpected_state", "message": "already succeeded"}})

    gw = make_gateway(handler)
    assert await gw.cancel_payment_intent("pi_gone") is None
    assert await gw.cancel_payment_intent("pi_done") is None


@pytest.mark.asyncio
async def test_invalid_request_is_raised():
    def handler(request):
        return httpx.Response(400, json={"error": {"code": "parameter_invalid_integer", "message": "bad amount"}})

    gw = make_gateway(handler)
    with pytest.raises(GatewayInvalidRequestError) as info:
        await gw.create_recurring_price(-1, "month", 1, {"name": "x"})
    assert not isinstance(info.value, GatewayNotFoundError)


@pytest.mark.asyncio
async def test_customer_lookup_reuses_existing():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"data": [{"id": "cus_existing"}]})

    gw = make_gateway(handler)
    customer = await gw.create_or_get_customer("buyer@example.com")
    assert customer["id"] == "cus_existing"
    assert seen == [("GET", "/v1/customers")]


@pytest.mark.asyncio
async def test_price_and_payment_method_calls_carry_idempotency_keys():
    seen = []

    def handler(request):
        seen.append(request)
        if len(seen) == 1:
            raise httpx.ReadTimeout("slow gateway", request=request)
        return httpx.Response(200, json={"id": "obj_1"})

    gw = make_gateway(handler)
    await gw.create_recurring_price(2000, "month", 1, {"name": "Monthly treats"}, idempotency_key="order-o-1-price")
    await gw.attach_payment_method("cus_1", "pm_card_visa", idempotency_key="order-o-1-pm")

    # the timed out price call is retried under the same key
    assert [r.url.path for r in seen] == [
        "/v1/prices", "/v1/prices", "/v1/payment_methods/pm_card_visa/attach", "/v1/customers/cus_1",
    ]
    assert [r.headers.get("Idempotency-Key") for r in seen] == [
        "order-o-1-price", "order-o-1-price", "order-o-1-pm-attach", "order-o-1-pm-default",
    ]


@pytest.mark.asyncio
async def test_subscription_and_invoice_calls():
    seen = []

    def handler(request):
        seen.append(request)
        if request.url.path.endswith("/invoices"):
            return httpx.Response(200, json={"data": [{"id": "in_1", "status": "paid"}]})
        return httpx.Response(200, json={"id": "sub_1", "status": "active"})

    gw = make_gateway(handler)
    await gw.create_subscription("cus_1", "price_1", {"order_id": "o-1"}, cancel_at=1893456000, idempotency_key="k")
    await gw.pause_subscription("sub_1")
    await gw.resume_subscription("sub_1")
    invoices = await gw.list_invoices("sub_1", status="paid")

    created = form(seen[0])
    assert created["items[0][price]"] == "price_1"
    assert created["cancel_at"] == "1893456000"
    assert created["payment_behavior"] == "error_if_incomplete"
    assert form(seen[1])["pause_collection[behavior]"] == "void"
    assert seen[2].content == b"pause_collection="
    assert dict(seen[3].url.params) == {"subscription": "sub_1", "limit": "100", "status": "paid"}
    assert invoices == [{"id": "in_1", "status": "paid"}]


def test_signature_round_trip():
    body = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode()
    ts = int(time.time())
    header = f"t={ts},v1={sign_payload(body, 'whsec_x', ts)}"
    assert verify_webhook_signature(body, header, "whsec_x")["id"] == "evt_1"


def test_signature_accepts_any_matching_v1():
    body = b'{"id": "evt_1"}'
    ts = 1_700_000_000
    header = f"t={ts},v1=deadbeef,v1={sign_payload(body, 'whsec_x', ts)}"
    assert verify_webhook_signature(body, header, "whsec_x", current_time=ts + 10)["id"] == "evt_1"


@pytest.mark.parametrize("header,secret,now_offset", [
    (None, "whsec_x", 0),
    ("v1=abc", "whsec_x", 0),
    ("t=notanumber,v1=abc", "whsec_x", 0),
    ("VALID", "", 0),
    ("VALID", "whsec_x", 301),
])
def test_signature_rejections(header, secret, now_offset):
    body = b'{"id": "evt_1"}'
    ts = 1_700_000_000
    if header == "VALID":
        header = f"t={ts},v1={sign_payload(body, 'whsec_x', ts)}"
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(body, header, secret, 300, current_time=ts + now_offset)


def test_signature_rejects_non_object_body():
    body = b"[1, 2]"
    ts = 1_700_000_000
    header = f"t={ts},v1={sign_payload(body, 'whsec_x', ts)}"
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(body, header, "whsec_x", current_time=ts)
