"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements one adapter
per gateway and the factory picks it by ``PaymentMethod``.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CaptureResult,
    CreatePaymentCommand,
    GatewayPaymentResult,
    RefundResult,
)
from domain.payment.entity import PaymentMethod
from domain.payment.events import GatewayEvent
from shared.codes.payment_codes import CanonicalStatus


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Transport failures raise ``PaymentRecoverableError``; provider-side
    rejections raise ``PaymentProviderError``. Webhook helpers never touch
    persistence.
    """

    method: PaymentMethod
    # True when a redirect return must be followed by an explicit capture
    two_phase: bool

    def ensure_supported(self, order_id: str, currency: str) -> None: ...

    async def create_payment(self, cmd: CreatePaymentCommand) -> GatewayPaymentResult: ...

    async def capture_payment(self, transaction_id: str) -> CaptureResult: ...

    async def refund_payment(self, transaction_id: str, amount: Decimal, currency: str) -> RefundResult: ...

    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool: ...

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[GatewayEvent]: ...

    async def get_payment_status(self, transaction_id: str) -> CanonicalStatus: ...

    async def aclose(self) -> None: ...
