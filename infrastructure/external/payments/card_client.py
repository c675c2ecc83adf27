"""
Card processor adapter (Stripe PaymentIntents) using the official stripe-python SDK.

Notes on SDK usage:
- The SDK is synchronous; every call runs in a worker thread bounded by the
  configured total timeout.
- Credentials are passed per request (``api_key=``) so no module-level
  global is mutated.
- Webhook verification uses ``stripe.Webhook.construct_event`` with the
  ``Stripe-Signature`` header (HMAC-SHA256 over ``t.payload``).
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Mapping, Optional

import stripe

from application.dtos.payments import (
    CaptureResult,
    CreatePaymentCommand,
    GatewayPaymentResult,
    RefundResult,
)
from core.settings import CardProcessorSettings, WebhookSettings
from domain.payment.entity import PaymentMethod
from domain.payment.events import GatewayEvent, GatewayEventType
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    MalformedWebhookError,
    PaymentProviderError,
    PaymentRecoverableError,
)
from shared.codes.payment_codes import CanonicalStatus


ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "XAF", "XOF"}

_EVENT_TYPES = {
    "payment_intent.succeeded": GatewayEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventType.PAYMENT_FAILED,
    "charge.refunded": GatewayEventType.REFUNDED,
}


def _as_dict(obj: Any) -> dict[str, Any]:
    """StripeObject -> plain JSON-safe dict for persistence."""
    if obj is None:
        return {}
    return json.loads(json.dumps(obj, default=str))


class StripeCardClient(BasePaymentClient):
    method = PaymentMethod.CARD
    provider = "stripe"
    two_phase = False

    def __init__(self, config: CardProcessorSettings, *, webhook: Optional[WebhookSettings] = None, **kwargs):
        super().__init__(currencies=config.currencies, **kwargs)
        self._config = config
        self._webhook = webhook or WebhookSettings()
        # manual capture turns the intent into authorize-then-capture
        self.two_phase = config.capture_method == "manual"

    def _request_opts(self) -> dict[str, Any]:
        if not self._config.secret_key:
            raise PaymentProviderError("Card processor is not configured", provider=self.provider, provider_code="not_configured")
        return {"api_key": self._config.secret_key, "stripe_version": self._config.api_version}

    @staticmethod
    def _to_minor(amount: Decimal, currency: str) -> int:
        # Stripe expects amounts in the smallest currency unit
        exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
        return int((amount * (Decimal(10) ** exponent)).to_integral_value())

    @staticmethod
    def _from_minor(amount: Optional[int], currency: str) -> Optional[Decimal]:
        if amount is None:
            return None
        exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
        return (Decimal(int(amount)) / (Decimal(10) ** exponent)).quantize(Decimal("0.01"))

    def _translate_error(self, exc: Exception) -> Exception:
        code = getattr(exc, "code", None)
        if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError)):
            return PaymentRecoverableError("Card processor temporarily unavailable", provider=self.provider, provider_code=code or type(exc).__name__)
        if isinstance(exc, stripe.CardError):
            # user_message is safe to show; the raw message may not be
            message = getattr(exc, "user_message", None) or "Card was declined"
            return PaymentProviderError(message, provider=self.provider, provider_code=code or "card_declined")
        return PaymentProviderError("Card processor rejected the request", provider=self.provider, provider_code=code or type(exc).__name__)

    async def _sdk(self, fn, *args, **kwargs):
        try:
            return await self._call_sdk(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            self._log("payment_gateway_error", error_type=type(exc).__name__, code=getattr(exc, "code", None))
            raise self._translate_error(exc) from exc

    async def create_payment(self, cmd: CreatePaymentCommand) -> GatewayPaymentResult:  # type: ignore[override]
        self.ensure_supported(cmd.order_id, cmd.currency)
        amount_minor = self._to_minor(cmd.amount, cmd.currency)
        self._log("payment_gateway_request", op="create", payment_id=cmd.payment_id, amount_minor=amount_minor)
        params: dict[str, Any] = {
            "amount": amount_minor,
            "currency": cmd.currency.lower(),
            "capture_method": self._config.capture_method,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {"order_id": cmd.order_id, "user_id": cmd.user_id, "payment_id": cmd.payment_id},
        }
        if cmd.description:
            params["description"] = cmd.description
        if cmd.payer.email:
            params["receipt_email"] = cmd.payer.email
        pi = await self._sdk(
            stripe.PaymentIntent.create,
            idempotency_key=f"payment-{cmd.payment_id}",
            **params,
            **self._request_opts(),
        )
        raw = _as_dict(pi)
        return GatewayPaymentResult(
            success=True,
            transaction_id=str(raw["id"]),
            status=self._map_status(raw.get("status")),
            client_secret=raw.get("client_secret"),
            raw={k: v for k, v in raw.items() if k != "client_secret"},
        )

    async def capture_payment(self, transaction_id: str) -> CaptureResult:  # type: ignore[override]
        pi = _as_dict(await self._sdk(stripe.PaymentIntent.retrieve, transaction_id, **self._request_opts()))
        if pi.get("status") == "requires_capture":
            pi = _as_dict(await self._sdk(
                stripe.PaymentIntent.capture,
                transaction_id,
                idempotency_key=f"capture-{transaction_id}",
                **self._request_opts(),
            ))
        status = self._map_status(pi.get("status"))
        currency = str(pi.get("currency") or "usd")
        return CaptureResult(
            success=status is CanonicalStatus.COMPLETED,
            status=status,
            amount=self._from_minor(pi.get("amount_received"), currency),
            raw=pi,
        )

    async def refund_payment(self, transaction_id: str, amount: Decimal, currency: str) -> RefundResult:  # type: ignore[override]
        amount_minor = self._to_minor(amount, currency)
        refund = _as_dict(await self._sdk(
            stripe.Refund.create,
            payment_intent=transaction_id,
            amount=amount_minor,
            idempotency_key=f"refund-{transaction_id}-{amount_minor}",
            **self._request_opts(),
        ))
        status = str(refund.get("status") or "pending")
        return RefundResult(
            success=status in {"succeeded", "pending"},
            refund_id=refund.get("id"),
            status=status,
            raw=refund,
        )

    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:  # type: ignore[override]
        secret = self._config.webhook_secret
        sig = self._header(headers, "Stripe-Signature")
        if not secret or not sig:
            self._log("webhook_signature_missing", has_secret=bool(secret), has_header=bool(sig))
            return False
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=secret,
                tolerance=self._webhook.tolerance_seconds,
            )
        except stripe.SignatureVerificationError:
            return False
        except ValueError:
            # unparsable payload cannot be trusted either
            return False
        return True

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[GatewayEvent]:  # type: ignore[override]
        payload = self._decode_json(body)
        event_type = _EVENT_TYPES.get(str(payload.get("type")))
        if event_type is None:
            return None

        obj = (payload.get("data") or {}).get("object")
        if not isinstance(obj, dict):
            raise MalformedWebhookError("Stripe event has no data.object", provider=self.provider)

        currency = str(obj.get("currency") or "").upper() or None
        if event_type is GatewayEventType.REFUNDED:
            transaction_id = obj.get("payment_intent")
            amount = self._from_minor(obj.get("amount_refunded"), currency or "USD")
            error = None
        else:
            transaction_id = obj.get("id")
            amount = self._from_minor(obj.get("amount_received") or obj.get("amount"), currency or "USD")
            error = ((obj.get("last_payment_error") or {}).get("message")
                     if event_type is GatewayEventType.PAYMENT_FAILED else None)

        if not transaction_id:
            raise MalformedWebhookError("Stripe event has no payment intent id", provider=self.provider)

        return GatewayEvent(
            type=event_type,
            method=self.method,
            gateway_transaction_id=str(transaction_id),
            raw_payload=payload,
            event_id=payload.get("id"),
            amount=amount,
            currency=currency,
            error_message=error,
        )

    async def get_payment_status(self, transaction_id: str) -> CanonicalStatus:  # type: ignore[override]
        pi = _as_dict(await self._sdk(stripe.PaymentIntent.retrieve, transaction_id, **self._request_opts()))
        return self._map_status(pi.get("status"))
