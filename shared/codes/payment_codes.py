"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import Enum, IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    MALFORMED_WEBHOOK = 60005


class CanonicalStatus(str, Enum):
    """Provider-independent view of a gateway transaction."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


# Keys are PaymentMethod values; anything unmapped resolves to UNKNOWN.
PROVIDER_STATUS_TO_INTERNAL: dict[str, dict[str, CanonicalStatus]] = {
    "card-processor": {
        # Stripe PaymentIntent.status
        "requires_payment_method": CanonicalStatus.PENDING,
        "requires_confirmation": CanonicalStatus.PENDING,
        "requires_action": CanonicalStatus.PENDING,
        "processing": CanonicalStatus.PROCESSING,
        "requires_capture": CanonicalStatus.PROCESSING,
        "succeeded": CanonicalStatus.COMPLETED,
        "canceled": CanonicalStatus.FAILED,
    },
    "wallet-processor": {
        # PayPal Orders v2 status
        "CREATED": CanonicalStatus.PENDING,
        "SAVED": CanonicalStatus.PENDING,
        "PAYER_ACTION_REQUIRED": CanonicalStatus.PENDING,
        "APPROVED": CanonicalStatus.PROCESSING,
        "COMPLETED": CanonicalStatus.COMPLETED,
        "VOIDED": CanonicalStatus.FAILED,
        "CANCELLED": CanonicalStatus.FAILED,
    },
    # PayHere exposes no status API
    "hash-processor": {},
}
