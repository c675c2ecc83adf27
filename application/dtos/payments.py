"""
Payment DTOs (Pydantic v2) used at application boundaries.

Gateway-facing models (commands and results exchanged with adapters) live
next to the HTTP request/response models so both sides share one vocabulary.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.types import condecimal

from domain.payment.entity import Payment, PaymentMethod, PaymentTransaction
from shared.codes.payment_codes import CanonicalStatus


def _normalize_currency(v: str) -> str:
    u = (v or "").strip().upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


# ---------------------------------------------------------------------------
# Gateway commands / results
# ---------------------------------------------------------------------------

class PayerInfo(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class CreatePaymentCommand(BaseModel):
    payment_id: str
    order_id: str
    user_id: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str
    description: Optional[str] = None
    payer: PayerInfo = Field(default_factory=PayerInfo)

    @field_validator("currency")
    @classmethod
    def _currency(cls, v: str) -> str:
        return _normalize_currency(v)


class GatewayPaymentResult(BaseModel):
    """Adapter answer for create_payment; redirect/secret fields are gateway-dependent."""
    success: bool
    transaction_id: Optional[str] = None
    status: CanonicalStatus = CanonicalStatus.PENDING
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    action_url: Optional[str] = None
    payment_data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class CaptureResult(BaseModel):
    success: bool
    status: CanonicalStatus
    amount: Optional[Decimal] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class RefundResult(BaseModel):
    success: bool
    refund_id: Optional[str] = None
    status: str = "pending"
    manual_action_required: bool = False
    error: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# HTTP request / response models
# ---------------------------------------------------------------------------

class InitiatePaymentRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    payment_method: PaymentMethod
    currency: str = Field(default="USD")

    @field_validator("currency")
    @classmethod
    def _currency(cls, v: str) -> str:
        return _normalize_currency(v)


class InitiatePaymentResponse(BaseModel):
    payment_id: str
    transaction_id: Optional[str] = None
    status: str
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    action_url: Optional[str] = None
    payment_data: Optional[dict[str, Any]] = None


class ConfirmPaymentRequest(BaseModel):
    payment_id: str = Field(min_length=1)
    transaction_id: str = Field(min_length=1)


class ConfirmPaymentResponse(BaseModel):
    payment_id: str
    payment_status: str
    outcome: Optional[str] = None


class PaymentDTO(BaseModel):
    """Full projection of a Payment as exposed to its owner."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    user_id: str
    amount: Decimal
    currency: str
    method: PaymentMethod
    status: str
    gateway_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentDTO":
        return cls(
            id=payment.id,
            order_id=payment.order_id,
            user_id=payment.user_id,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.method,
            status=payment.status.value,
            gateway_transaction_id=payment.gateway_transaction_id,
            failure_reason=payment.failure_reason,
            refund_reason=payment.refund_reason,
            paid_at=payment.paid_at,
            refunded_at=payment.refunded_at,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            metadata=payment.metadata or {},
        )


class PaymentTransactionDTO(BaseModel):
    id: Optional[int] = None
    transaction_type: str
    status: str
    amount: Decimal
    currency: str
    gateway_transaction_id: Optional[str] = None
    event_type: Optional[str] = None
    source: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, txn: PaymentTransaction) -> "PaymentTransactionDTO":
        return cls(
            id=txn.id,
            transaction_type=txn.transaction_type.value,
            status=txn.status.value,
            amount=txn.amount,
            currency=txn.currency,
            gateway_transaction_id=txn.gateway_transaction_id,
            event_type=txn.event_type,
            source=txn.source,
            error_message=txn.error_message,
            created_at=txn.created_at,
        )


class RefundPaymentRequest(BaseModel):
    amount: Optional[condecimal(gt=0)] = None  # type: ignore[valid-type]
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundPaymentResponse(BaseModel):
    payment_id: str
    payment_status: str
    refund_id: Optional[str] = None
    outcome: Optional[str] = None


class WebhookAck(BaseModel):
    provider: str
    outcome: str
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
