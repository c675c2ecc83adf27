"""
Wallet processor adapter (PayPal REST, Orders v2) over httpx.

- OAuth2 client-credentials token, cached until shortly before expiry.
- Orders are created with ``intent=CAPTURE``; after the buyer approves, the
  order must be captured (two-phase from our point of view).
- Webhooks are verified remotely through
  ``/v1/notifications/verify-webhook-signature``.
"""
from __future__ import annotations

import time
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import httpx

from application.dtos.payments import (
    CaptureResult,
    CreatePaymentCommand,
    GatewayPaymentResult,
    RefundResult,
)
from core.settings import WalletProcessorSettings
from domain.payment.entity import PaymentMethod
from domain.payment.events import GatewayEvent, GatewayEventType
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    MalformedWebhookError,
    PaymentProviderError,
    PaymentRecoverableError,
)
from shared.codes.payment_codes import CanonicalStatus


_EVENT_TYPES = {
    "PAYMENT.CAPTURE.COMPLETED": GatewayEventType.PAYMENT_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": GatewayEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.DECLINED": GatewayEventType.PAYMENT_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": GatewayEventType.REFUNDED,
}

# header name -> verify-webhook-signature field
_SIGNATURE_HEADERS = {
    "Paypal-Auth-Algo": "auth_algo",
    "Paypal-Cert-Url": "cert_url",
    "Paypal-Transmission-Id": "transmission_id",
    "Paypal-Transmission-Sig": "transmission_sig",
    "Paypal-Transmission-Time": "transmission_time",
}


def _decimal(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value)) if value is not None else None
    except InvalidOperation:
        return None


class PayPalWalletClient(BasePaymentClient):
    method = PaymentMethod.WALLET
    provider = "paypal"
    two_phase = True

    def __init__(self, config: WalletProcessorSettings, **kwargs):
        super().__init__(currencies=config.currencies, **kwargs)
        self._config = config
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0

    # ------------------------------------------------------------------ http
    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            body = resp.json()
        except ValueError:
            body = {}
        name = body.get("name") if isinstance(body, dict) else None
        details = body.get("details") if isinstance(body, dict) else None
        issue = details[0].get("issue") if isinstance(details, list) and details else None
        code = issue or name or str(resp.status_code)
        self._log("payment_gateway_error", status_code=resp.status_code, code=code, debug_id=body.get("debug_id") if isinstance(body, dict) else None)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise PaymentRecoverableError("Wallet processor temporarily unavailable", provider=self.provider, provider_code=code)
        raise PaymentProviderError("Wallet processor rejected the request", provider=self.provider, provider_code=code)

    def _decode(self, resp: httpx.Response) -> dict[str, Any]:
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            self._log("payment_gateway_invalid_response", status_code=resp.status_code)
            raise PaymentProviderError(
                "Wallet processor returned an unreadable response", provider=self.provider, provider_code="invalid_response"
            ) from exc
        if not isinstance(body, dict):
            raise PaymentProviderError(
                "Wallet processor returned an unexpected response", provider=self.provider, provider_code="invalid_response"
            )
        return body

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not self._config.client_id or not self._config.client_secret:
            raise PaymentProviderError("Wallet processor is not configured", provider=self.provider, provider_code="not_configured")

        async def _do():
            async with self.client() as c:
                return await c.post(
                    f"{self._config.base_url}/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self._config.client_id, self._config.client_secret),
                    headers={"Accept": "application/json"},
                )

        resp = await self._retry(_do)
        self._raise_for_status(resp)
        data = self._decode(resp)
        if not data.get("access_token"):
            raise PaymentProviderError("Wallet processor issued no access token", provider=self.provider, provider_code="invalid_token_response")
        self._token = data["access_token"]
        # refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 300)) - 60, 0)
        return self._token

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        token = await self._access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        async def _do():
            async with self.client() as c:
                return await c.request(method, f"{self._config.base_url}{path}", json=json_body, headers=headers)

        resp = await self._retry(_do)
        self._raise_for_status(resp)
        return self._decode(resp)

    # -------------------------------------------------------------- gateway
    async def create_payment(self, cmd: CreatePaymentCommand) -> GatewayPaymentResult:  # type: ignore[override]
        self.ensure_supported(cmd.order_id, cmd.currency)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": cmd.order_id,
                "custom_id": cmd.payment_id,
                "description": cmd.description or f"Order {cmd.order_id}",
                "amount": {"currency_code": cmd.currency, "value": f"{cmd.amount:.2f}"},
            }],
            "application_context": {
                "brand_name": self._config.brand_name,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": self._config.return_url,
                "cancel_url": self._config.cancel_url,
            },
        }
        self._log("payment_gateway_request", op="create", payment_id=cmd.payment_id)
        order = await self._send("POST", "/v2/checkout/orders", json_body=body, request_id=f"payment-{cmd.payment_id}")

        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") in {"approve", "payer-action"}),
            None,
        )
        if not order.get("id") or not approval_url:
            return GatewayPaymentResult(
                success=False,
                error="Wallet processor returned no approval link",
                error_code="no_approval_link",
                raw=order,
            )
        return GatewayPaymentResult(
            success=True,
            transaction_id=order["id"],
            status=self._map_status(order.get("status")),
            approval_url=approval_url,
            raw=order,
        )

    async def capture_payment(self, transaction_id: str) -> CaptureResult:  # type: ignore[override]
        try:
            order = await self._send(
                "POST",
                f"/v2/checkout/orders/{transaction_id}/capture",
                json_body={},
                request_id=f"capture-{transaction_id}",
            )
        except PaymentProviderError as exc:
            if exc.provider_code != "ORDER_ALREADY_CAPTURED":
                raise
            order = await self._send("GET", f"/v2/checkout/orders/{transaction_id}")

        status = self._map_status(order.get("status"))
        captures = self._captures(order)
        amount = _decimal(captures[0].get("amount", {}).get("value")) if captures else None
        return CaptureResult(success=status is CanonicalStatus.COMPLETED, status=status, amount=amount, raw=order)

    @staticmethod
    def _captures(order: dict[str, Any]) -> list[dict[str, Any]]:
        units = order.get("purchase_units") or []
        if not units:
            return []
        return ((units[0].get("payments") or {}).get("captures")) or []

    async def refund_payment(self, transaction_id: str, amount: Decimal, currency: str) -> RefundResult:  # type: ignore[override]
        order = await self._send("GET", f"/v2/checkout/orders/{transaction_id}")
        captures = self._captures(order)
        if not captures:
            return RefundResult(success=False, status="failed", error="Order has no capture to refund", raw=order)
        capture_id = captures[0]["id"]
        refund = await self._send(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json_body={"amount": {"value": f"{amount:.2f}", "currency_code": currency.upper()}},
            request_id=f"refund-{capture_id}-{amount:.2f}",
        )
        status = str(refund.get("status") or "PENDING").lower()
        return RefundResult(
            success=status in {"completed", "pending"},
            refund_id=refund.get("id"),
            status=status,
            raw=refund,
        )

    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:  # type: ignore[override]
        if not self._config.webhook_id:
            self._log("webhook_signature_missing", reason="webhook_id not configured")
            return False

        fields: dict[str, Any] = {}
        for header, field in _SIGNATURE_HEADERS.items():
            value = self._header(headers, header)
            if not value:
                self._log("webhook_signature_missing", header=header)
                return False
            fields[field] = value

        try:
            event = self._decode_json(body)
        except MalformedWebhookError:
            return False

        fields["webhook_id"] = self._config.webhook_id
        fields["webhook_event"] = event
        try:
            result = await self._send("POST", "/v1/notifications/verify-webhook-signature", json_body=fields)
        except (PaymentProviderError, PaymentRecoverableError) as exc:
            self._log("webhook_verification_unavailable", error_type=exc.error_type)
            return False
        return result.get("verification_status") == "SUCCESS"

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[GatewayEvent]:  # type: ignore[override]
        payload = self._decode_json(body)
        event_type = _EVENT_TYPES.get(str(payload.get("event_type")))
        if event_type is None:
            return None

        resource = payload.get("resource")
        if not isinstance(resource, dict):
            raise MalformedWebhookError("PayPal event has no resource", provider=self.provider)

        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        transaction_id = related.get("order_id") or resource.get("id")
        if not transaction_id:
            raise MalformedWebhookError("PayPal event has no order id", provider=self.provider)

        amount = resource.get("amount") or {}
        error = None
        if event_type is GatewayEventType.PAYMENT_FAILED:
            error = (resource.get("status_details") or {}).get("reason") or "Capture denied"

        return GatewayEvent(
            type=event_type,
            method=self.method,
            gateway_transaction_id=str(transaction_id),
            raw_payload=payload,
            event_id=payload.get("id"),
            amount=_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            error_message=error,
        )

    async def get_payment_status(self, transaction_id: str) -> CanonicalStatus:  # type: ignore[override]
        order = await self._send("GET", f"/v2/checkout/orders/{transaction_id}")
        return self._map_status(order.get("status"))
