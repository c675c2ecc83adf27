import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

stripe = pytest.importorskip("stripe")

from application.dtos.payments import CreatePaymentCommand  # noqa: E402
from core.settings import CardProcessorSettings  # noqa: E402
from domain.payment.events import GatewayEventType  # noqa: E402
from infrastructure.external.payments import StripeCardClient  # noqa: E402
from infrastructure.external.payments.exceptions import (  # noqa: E402
    MalformedWebhookError,
    PaymentProviderError,
    PaymentRecoverableError,
)
from shared.codes.payment_codes import CanonicalStatus  # noqa: E402


WEBHOOK_SECRET = "whsec_test_secret"


def _client(**overrides):
    cfg = CardProcessorSettings(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET, **overrides)
    return StripeCardClient(cfg)


def _signed(payload: dict, secret: str = WEBHOOK_SECRET, timestamp: int | None = None):
    body = json.dumps(payload).encode("utf-8")
    ts = timestamp if timestamp is not None else int(time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={ts},v1={sig}"}


def _intent_event(event_type: str, **obj):
    base = {"id": "pi_123", "object": "payment_intent", "amount": 4999, "amount_received": 4999, "currency": "usd"}
    base.update(obj)
    return {"id": "evt_1", "type": event_type, "data": {"object": base}}


@pytest.mark.asyncio
async def test_verify_webhook_accepts_valid_signature():
    body, headers = _signed(_intent_event("payment_intent.succeeded"))
    assert await _client().verify_webhook(body, headers) is True


@pytest.mark.asyncio
async def test_verify_webhook_rejects_wrong_secret_and_missing_header():
    body, headers = _signed(_intent_event("payment_intent.succeeded"), secret="whsec_other")
    client = _client()
    assert await client.verify_webhook(body, headers) is False
    assert await client.verify_webhook(body, {}) is False


@pytest.mark.asyncio
async def test_verify_webhook_rejects_stale_timestamp():
    body, headers = _signed(_intent_event("payment_intent.succeeded"), timestamp=int(time.time()) - 3600)
    assert await _client().verify_webhook(body, headers) is False


@pytest.mark.asyncio
async def test_verify_webhook_rejects_tampered_body():
    _, headers = _signed(_intent_event("payment_intent.succeeded"))
    tampered = json.dumps(_intent_event("payment_intent.succeeded", amount_received=1)).encode("utf-8")
    assert await _client().verify_webhook(tampered, headers) is False


def test_parse_succeeded_event():
    body, headers = _signed(_intent_event("payment_intent.succeeded"))
    event = _client().parse_webhook(body, headers)
    assert event.type is GatewayEventType.PAYMENT_SUCCEEDED
    assert event.gateway_transaction_id == "pi_123"
    assert event.amount == Decimal("49.99")
    assert event.currency == "USD"
    assert event.event_id == "evt_1"


def test_parse_failed_event_carries_decline_message():
    payload = _intent_event("payment_intent.payment_failed", last_payment_error={"message": "Your card was declined."})
    event = _client().parse_webhook(json.dumps(payload).encode(), {})
    assert event.type is GatewayEventType.PAYMENT_FAILED
    assert event.error_message == "Your card was declined."


def test_parse_refund_targets_payment_intent():
    payload = {
        "id": "evt_2",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "payment_intent": "pi_123", "amount_refunded": 4999, "currency": "usd"}},
    }
    event = _client().parse_webhook(json.dumps(payload).encode(), {})
    assert event.type is GatewayEventType.REFUNDED
    assert event.gateway_transaction_id == "pi_123"


def test_parse_ignores_unrelated_event_types():
    payload = {"id": "evt_3", "type": "customer.created", "data": {"object": {}}}
    assert _client().parse_webhook(json.dumps(payload).encode(), {}) is None


def test_parse_rejects_garbage():
    client = _client()
    with pytest.raises(MalformedWebhookError):
        client.parse_webhook(b"not json", {})
    with pytest.raises(MalformedWebhookError):
        client.parse_webhook(json.dumps({"type": "payment_intent.succeeded", "data": {}}).encode(), {})


@pytest.mark.asyncio
async def test_create_payment_sends_minor_units_and_idempotency_key(monkeypatch):
    seen = {}

    def fake_create(**kwargs):
        seen.update(kwargs)
        return {"id": "pi_123", "status": "requires_payment_method", "client_secret": "pi_123_secret_x"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    cmd = CreatePaymentCommand(
        payment_id="pay-1",
        order_id="65a1f0c2e4b0a1b2c3d4e5f6",
        user_id="user-1",
        amount=Decimal("49.99"),
        currency="usd",
    )

    result = await _client().create_payment(cmd)

    assert seen["amount"] == 4999
    assert seen["currency"] == "usd"
    assert seen["idempotency_key"] == "payment-pay-1"
    assert seen["api_key"] == "sk_test_123"
    assert seen["metadata"]["order_id"] == "65a1f0c2e4b0a1b2c3d4e5f6"
    assert result.transaction_id == "pi_123"
    assert result.client_secret == "pi_123_secret_x"
    assert result.status is CanonicalStatus.PENDING
    assert "client_secret" not in result.raw


@pytest.mark.asyncio
async def test_create_payment_translates_sdk_errors(monkeypatch):
    def declined(**kwargs):
        raise stripe.CardError("declined", param=None, code="card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "create", declined)
    cmd = CreatePaymentCommand(
        payment_id="pay-1", order_id="65a1f0c2e4b0a1b2c3d4e5f6", user_id="user-1", amount=Decimal("10"), currency="USD"
    )
    with pytest.raises(PaymentProviderError) as exc_info:
        await _client().create_payment(cmd)
    assert exc_info.value.provider_code == "card_declined"

    def unreachable(**kwargs):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.PaymentIntent, "create", unreachable)
    with pytest.raises(PaymentRecoverableError):
        await _client().create_payment(cmd)


@pytest.mark.asyncio
async def test_unconfigured_client_refuses_calls():
    cmd = CreatePaymentCommand(
        payment_id="pay-1", order_id="65a1f0c2e4b0a1b2c3d4e5f6", user_id="user-1", amount=Decimal("10"), currency="USD"
    )
    with pytest.raises(PaymentProviderError) as exc_info:
        await StripeCardClient(CardProcessorSettings()).create_payment(cmd)
    assert exc_info.value.provider_code == "not_configured"
