"""
Hash processor adapter (PayHere checkout).

The buyer is sent to PayHere with a signed form; PayHere then posts a
form-encoded notification whose ``md5sig`` is recomputed here:

    checkout hash = UPPER(MD5(merchant_id + order_id + amount + currency + UPPER(MD5(secret))))
    notify md5sig = UPPER(MD5(merchant_id + order_id + payhere_amount + payhere_currency
                              + status_code + UPPER(MD5(secret))))

PayHere's ``order_id`` is our payment id, so every attempt has its own
transaction id; the real order id travels in ``custom_1``. There is no
refund API and no status API for this integration.
"""
from __future__ import annotations

import hashlib
import hmac
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional
from urllib.parse import parse_qs

from application.dtos.payments import (
    CaptureResult,
    CreatePaymentCommand,
    GatewayPaymentResult,
    RefundResult,
)
from core.settings import HashProcessorSettings
from domain.payment.entity import PaymentMethod
from domain.payment.events import GatewayEvent, GatewayEventType
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    MalformedWebhookError,
    PaymentProviderError,
)
from shared.codes.payment_codes import CanonicalStatus


# PayHere status_code -> canonical event; "0" (pending) carries no transition
_STATUS_EVENTS = {
    "2": GatewayEventType.PAYMENT_SUCCEEDED,
    "-1": GatewayEventType.PAYMENT_FAILED,   # canceled by buyer
    "-2": GatewayEventType.PAYMENT_FAILED,   # failed
    "-3": GatewayEventType.REFUNDED,         # charged back
}


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def _parse_form(body: bytes) -> dict[str, str]:
    try:
        parsed = parse_qs(body.decode("utf-8"), keep_blank_values=True, strict_parsing=False)
    except UnicodeDecodeError:
        return {}
    return {k: v[0] for k, v in parsed.items() if v}


class PayHereHashClient(BasePaymentClient):
    method = PaymentMethod.HASH
    provider = "payhere"
    two_phase = False

    def __init__(self, config: HashProcessorSettings, **kwargs):
        super().__init__(currencies=config.currencies, **kwargs)
        self._config = config

    def _secret_digest(self) -> str:
        if not self._config.merchant_id or not self._config.merchant_secret:
            raise PaymentProviderError("Hash processor is not configured", provider=self.provider, provider_code="not_configured")
        return _md5_upper(self._config.merchant_secret)

    def checkout_hash(self, order_id: str, amount: Decimal, currency: str) -> str:
        return _md5_upper(
            f"{self._config.merchant_id}{order_id}{amount:.2f}{currency.upper()}{self._secret_digest()}"
        )

    def notification_signature(self, fields: Mapping[str, str]) -> str:
        return _md5_upper(
            f"{fields.get('merchant_id', '')}{fields.get('order_id', '')}"
            f"{fields.get('payhere_amount', '')}{fields.get('payhere_currency', '')}"
            f"{fields.get('status_code', '')}{self._secret_digest()}"
        )

    async def create_payment(self, cmd: CreatePaymentCommand) -> GatewayPaymentResult:  # type: ignore[override]
        self.ensure_supported(cmd.order_id, cmd.currency)
        payer = cmd.payer
        payment_data = {
            "merchant_id": self._config.merchant_id,
            "return_url": self._config.return_url,
            "cancel_url": self._config.cancel_url,
            "notify_url": self._config.notify_url,
            "order_id": cmd.payment_id,
            "items": cmd.description or f"Order {cmd.order_id}",
            "currency": cmd.currency,
            "amount": f"{cmd.amount:.2f}",
            "first_name": payer.first_name,
            "last_name": payer.last_name,
            "email": payer.email or "",
            "phone": payer.phone or "",
            "address": payer.address or "",
            "city": payer.city or "",
            "country": payer.country or "Sri Lanka",
            "custom_1": cmd.order_id,
            "custom_2": cmd.user_id,
            "hash": self.checkout_hash(cmd.payment_id, cmd.amount, cmd.currency),
        }
        self._log("payment_gateway_request", op="create", payment_id=cmd.payment_id, network=False)
        return GatewayPaymentResult(
            success=True,
            transaction_id=cmd.payment_id,
            status=CanonicalStatus.PENDING,
            action_url=f"{self._config.base_url}/pay/checkout",
            payment_data=payment_data,
            raw={"action_url": f"{self._config.base_url}/pay/checkout", "order_id": cmd.payment_id},
        )

    async def capture_payment(self, transaction_id: str) -> CaptureResult:  # type: ignore[override]
        # PayHere captures on checkout; nothing to finalize
        return CaptureResult(success=True, status=CanonicalStatus.UNKNOWN)

    async def refund_payment(self, transaction_id: str, amount: Decimal, currency: str) -> RefundResult:  # type: ignore[override]
        self._log("refund_manual_action_required", transaction_id=transaction_id, amount=str(amount), currency=currency)
        return RefundResult(
            success=False,
            status="manual_action_required",
            manual_action_required=True,
            error="Refunds for this gateway must be issued from the merchant portal",
        )

    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:  # type: ignore[override]
        fields = _parse_form(body)
        received = fields.get("md5sig")
        if not received or not self._config.merchant_id or not self._config.merchant_secret:
            return False
        if not hmac.compare_digest(fields.get("merchant_id", ""), self._config.merchant_id):
            return False
        expected = self.notification_signature(fields)
        return hmac.compare_digest(expected, received.upper())

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[GatewayEvent]:  # type: ignore[override]
        fields = _parse_form(body)
        if not fields.get("order_id") or "status_code" not in fields:
            raise MalformedWebhookError("PayHere notification lacks order_id/status_code", provider=self.provider)

        event_type = _STATUS_EVENTS.get(fields["status_code"].strip())
        if event_type is None:
            return None

        try:
            amount = Decimal(fields.get("payhere_amount", ""))
        except InvalidOperation:
            amount = None

        error = None
        if event_type is GatewayEventType.PAYMENT_FAILED:
            error = fields.get("status_message") or "Payment failed"

        raw = {k: v for k, v in fields.items() if k not in {"md5sig", "card_no", "card_holder_name"}}
        return GatewayEvent(
            type=event_type,
            method=self.method,
            gateway_transaction_id=fields["order_id"],
            raw_payload=raw,
            event_id=fields.get("payment_id"),
            amount=amount,
            currency=fields.get("payhere_currency"),
            error_message=error,
        )

    async def get_payment_status(self, transaction_id: str) -> CanonicalStatus:  # type: ignore[override]
        return CanonicalStatus.UNKNOWN
