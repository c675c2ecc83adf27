"""
Exceptions for payment providers mapped to unified BusinessException variants.

Messages and details must never carry credentials or raw signatures.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PaymentProviderError(BusinessException):
    """Provider rejected the request (decline, bad request, auth failure)."""

    retryable = False

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        self.provider = provider
        self.provider_code = provider_code
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=full_details,
        )


class PaymentRecoverableError(BusinessException):
    """Timeouts, connection resets, rate limits: safe to retry with a new attempt."""

    retryable = True

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        self.provider = provider
        self.provider_code = provider_code
        super().__init__(
            code=PaymentCode.PROVIDER_RECOVERABLE,
            message=message,
            error_type="PaymentRecoverableError",
            details=full_details,
        )


class MalformedWebhookError(BusinessException):
    def __init__(self, message: str, *, provider: str):
        super().__init__(
            code=PaymentCode.MALFORMED_WEBHOOK,
            message=message,
            error_type="MalformedWebhook",
            details={"provider": provider},
        )
