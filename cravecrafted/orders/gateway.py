import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode
import httpx
from cravecrafted.common.circuit_breaker import CircuitBreaker, CircuitOpenError
from cravecrafted.common.custom_exceptions import WebhookSignatureError
from cravecrafted.common.retries import retry_with_circuit
from cravecrafted.config.settings import config_settings
from cravecrafted.orders.constants import logger


class GatewayError(Exception):
    """Any failure reported by (or while talking to) the payment gateway."""
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, decline_code: Optional[str] = None,
                 http_status: Optional[int] = None, raw: Optional[dict] = None,
                 payment_intent_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.decline_code = decline_code
        self.http_status = http_status
        self.raw = raw or {}
        self.payment_intent_id = payment_intent_id

    def to_record(self) -> Dict[str, Any]:
        # persisted on the order for support diagnosis
        return {
            "type": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "decline_code": self.decline_code,
            "http_status": self.http_status,
            "raw": self.raw,
        }


class GatewayDeclineError(GatewayError):
    pass


class GatewayInvalidRequestError(GatewayError):
    pass


class GatewayNotFoundError(GatewayInvalidRequestError):
    pass


class GatewayTransientError(GatewayError):
    retryable = True


def flatten_form(data: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Nested dict -> gateway style form pairs, {"a": {"b": 1}} -> [("a[b]", "1")]."""
    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        full_key = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(flatten_form(value, full_key))
        elif isinstance(value, (list, tuple)):
            for idx, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(flatten_form(item, f"{full_key}[{idx}]"))
                else:
                    pairs.append((f"{full_key}[{idx}]", _form_value(item)))
        else:
            pairs.append((full_key, _form_value(value)))
    return pairs


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def classify_error_response(resp: httpx.Response) -> GatewayError:
    try:
        body = resp.json()
    except ValueError:
        body = {"raw_text": resp.text[:500]}
    err = body.get("error", {}) if isinstance(body, dict) else {}
    message = err.get("message") or f"gateway responded with {resp.status_code}"
    pi = err.get("payment_intent") or {}
    kwargs = dict(
        code=err.get("code"),
        decline_code=err.get("decline_code"),
        http_status=resp.status_code,
        raw=err or body,
        payment_intent_id=pi.get("id") if isinstance(pi, dict) else None,
    )

    if resp.status_code == 429 or resp.status_code >= 500:
        return GatewayTransientError(message, **kwargs)
    if err.get("type") == "card_error" or resp.status_code == 402:
        return GatewayDeclineError(message, **kwargs)
    if resp.status_code == 404 or err.get("code") == "resource_missing":
        return GatewayNotFoundError(message, **kwargs)
    if resp.status_code in (400, 401, 403):
        return GatewayInvalidRequestError(message, **kwargs)
    return GatewayError(message, **kwargs)


def _circuit_open_error(exc: CircuitOpenError) -> GatewayError:
    return GatewayTransientError("payment gateway temporarily unavailable", code="circuit_open")


class PaymentGateway:
    """Stripe compatible REST client used by the order engine.

    Every call carries a bounded timeout, transient failures (network, timeout, 429, 5xx) are retried
    with backoff behind a circuit breaker, anything else surfaces on the first attempt.
    """

    def __init__(self, *, api_base: str, secret_key: str, currency: str = "usd", timeout: float = 10.0,
                 max_retries: int = 3, backoff_base: float = 0.5, circuit: Optional[CircuitBreaker] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_base = api_base.rstrip("/")
        self.secret_key = secret_key
        self.currency = currency
        self.timeout = timeout
        self.transport = transport
        self.circuit = circuit or CircuitBreaker(name="payment_gateway", failure_threshold=5, recovery_timeout=30)
        self._send = retry_with_circuit(
            circuit=self.circuit,
            attempts=max(1, max_retries),
            base_delay=backoff_base,
            on_circuit_open=_circuit_open_error,
        )(self._send_once)

    async def _send_once(self, method: str, path: str, *, data: Optional[Dict[str, Any]] = None,
                         params: Optional[List[Tuple[str, str]]] = None,
                         idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        content = None
        if data is not None:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            content = urlencode(flatten_form(data))
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(base_url=self.api_base, timeout=self.timeout, transport=self.transport) as client:
                resp = await client.request(method, path, content=content, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise GatewayTransientError("payment gateway timed out", code="timeout") from exc
        except httpx.TransportError as exc:
            raise GatewayTransientError(f"payment gateway unreachable: {exc}", code="network_error") from exc

        if resp.status_code >= 400:
            err = classify_error_response(resp)
            logger.warning(
                "gateway.request.failed",
                extra={"gateway_path": path, "http_status": resp.status_code, "error_code": err.code,
                       "decline_code": err.decline_code, "error_type": type(err).__name__},
            )
            raise err
        return resp.json()

    async def request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        return await self._send(method, path, **kwargs)

    # ---- payment intents ----
    async def create_and_confirm_payment_intent(self, amount: int, currency: Optional[str], payment_method: str,
                                                metadata: Dict[str, Any], *, customer: Optional[str] = None,
                                                idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        data = {
            "amount": amount,
            "currency": currency or self.currency,
            "payment_method": payment_method,
            "payment_method_types": ["card"],
            "confirm": True,
            "metadata": metadata,
            "customer": customer,
        }
        pi = await self.request("POST", "/payment_intents", data=data, idempotency_key=idempotency_key)
        logger.info("gateway.payment_intent.created", extra={"payment_intent_id": pi.get("id"), "pi_status": pi.get("status")})
        return pi

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/payment_intents/{payment_intent_id}")

    async def cancel_payment_intent(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        """Release a pending authorisation, a missing or already settled intent is not an error."""
        try:
            return await self.request("POST", f"/payment_intents/{payment_intent_id}/cancel", data={},
                                      idempotency_key=f"cancel-{payment_intent_id}")
        except GatewayNotFoundError:
            logger.info("gateway.payment_intent.cancel_missing", extra={"payment_intent_id": payment_intent_id})
            return None
        except GatewayInvalidRequestError as exc:
            if exc.code == "payment_intent_unexpected_state":
                logger.info("gateway.payment_intent.cancel_unexpected_state", extra={"payment_intent_id": payment_intent_id})
                return None
            raise

    # ---- customers ----
    async def create_or_get_customer(self, email: str, *, name: Optional[str] = None,
                                     metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        found = await self.request("GET", "/customers", params=[("email", email), ("limit", "1")])
        if found.get("data"):
            return found["data"][0]
        return await self.request(
            "POST", "/customers",
            data={"email": email, "name": name, "metadata": metadata or {}},
            idempotency_key=f"customer-{email}",
        )

    async def attach_payment_method(self, customer_id: str, payment_method_id: str, *,
                                    idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        """Attach the method and make it the customer's default for invoices."""
        key = idempotency_key or f"attach-{customer_id}-{payment_method_id}"
        pm = await self.request("POST", f"/payment_methods/{payment_method_id}/attach", data={"customer": customer_id},
                                idempotency_key=f"{key}-attach")
        await self.request(
            "POST", f"/customers/{customer_id}",
            data={"invoice_settings": {"default_payment_method": pm.get("id", payment_method_id)}},
            idempotency_key=f"{key}-default",
        )
        return pm

    # ---- subscriptions ----
    async def create_recurring_price(self, amount: int, interval: str, interval_count: int,
                                     product_meta: Dict[str, Any], *, currency: Optional[str] = None,
                                     idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        data = {
            "unit_amount": amount,
            "currency": currency or self.currency,
            "recurring": {"interval": interval, "interval_count": interval_count},
            "product_data": {"name": product_meta.get("name", "Subscription"),
                             "metadata": {k: v for k, v in product_meta.items() if k != "name"}},
        }
        return await self.request("POST", "/prices", data=data, idempotency_key=idempotency_key)

    async def create_subscription(self, customer_id: str, price_id: str, metadata: Dict[str, Any],
                                  cancel_at: Optional[int] = None, *,
                                  idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        data = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata,
            "cancel_at": cancel_at,
            # a declined first charge fails the call instead of leaving an incomplete subscription
            "payment_behavior": "error_if_incomplete",
            "expand": ["latest_invoice.payment_intent"],
        }
        sub = await self.request("POST", "/subscriptions", data=data, idempotency_key=idempotency_key)
        logger.info("gateway.subscription.created", extra={"subscription_id": sub.get("id"), "sub_status": sub.get("status")})
        return sub

    async def update_subscription(self, subscription_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", f"/subscriptions/{subscription_id}", data=patch)

    async def pause_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self.update_subscription(subscription_id, {"pause_collection": {"behavior": "void"}})

    async def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        # an empty value clears pause_collection
        return await self.update_subscription(subscription_id, {"pause_collection": ""})

    async def cancel_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.request("DELETE", f"/subscriptions/{subscription_id}")
        except GatewayNotFoundError:
            logger.info("gateway.subscription.cancel_missing", extra={"subscription_id": subscription_id})
            return None

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/subscriptions/{subscription_id}")

    async def list_invoices(self, subscription_id: str, *, status: Optional[str] = None,
                            limit: int = 100) -> List[Dict[str, Any]]:
        params = [("subscription", subscription_id), ("limit", str(limit))]
        if status:
            params.append(("status", status))
        resp = await self.request("GET", "/invoices", params=params)
        return resp.get("data", [])

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str], secret: str,
                                 tolerance: int = 300) -> Dict[str, Any]:
        return verify_webhook_signature(raw_body, signature_header, secret, tolerance)


def _parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures: List[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def sign_payload(raw_body: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + raw_body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: bytes, signature_header: Optional[str], secret: str,
                             tolerance: int = 300, *, current_time: Optional[float] = None) -> Dict[str, Any]:
    """Verify a `Stripe-Signature` style header over the raw body and return the parsed event."""
    if not secret:
        # no configured secret means nothing can be trusted
        raise WebhookSignatureError("webhook secret not configured")
    if not signature_header:
        raise WebhookSignatureError("missing signature header")

    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        raise WebhookSignatureError("malformed signature header")

    expected = sign_payload(raw_body, secret, timestamp)
    if not any(hmac.compare_digest(expected.encode(), sig.encode()) for sig in signatures):
        raise WebhookSignatureError("signature mismatch")

    now_ts = current_time if current_time is not None else time.time()
    if tolerance and abs(now_ts - timestamp) > tolerance:
        raise WebhookSignatureError("signature timestamp outside tolerance", details={"timestamp": timestamp})

    try:
        event = json.loads(raw_body)
    except ValueError as exc:
        raise WebhookSignatureError("webhook body is not valid json") from exc
    if not isinstance(event, dict):
        raise WebhookSignatureError("webhook body is not an event object")
    return event


_gateway: Optional[PaymentGateway] = None


def build_gateway(transport: Optional[httpx.AsyncBaseTransport] = None) -> PaymentGateway:
    return PaymentGateway(
        api_base=config_settings.GATEWAY_API_BASE,
        secret_key=config_settings.GATEWAY_SECRET_KEY,
        currency=config_settings.GATEWAY_CURRENCY,
        timeout=config_settings.GATEWAY_TIMEOUT_SECONDS,
        max_retries=config_settings.GATEWAY_MAX_RETRIES,
        backoff_base=config_settings.GATEWAY_BACKOFF_BASE,
        transport=transport,
    )


def get_gateway() -> PaymentGateway:
    # one client config and one circuit per process
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway
