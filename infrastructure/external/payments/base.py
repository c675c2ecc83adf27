"""
Base payment client implementing shared concerns: http, retry, timeouts,
logging, validation and status mapping.

Concrete gateways subclass and implement provider-specific logic.
"""
from __future__ import annotations

import asyncio
import json
import re
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import PaymentRetry, PaymentTimeouts
from application.dtos.payments import (
    CaptureResult,
    CreatePaymentCommand,
    GatewayPaymentResult,
    RefundResult,
)
from application.ports.payment_gateway import PaymentGateway
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import PaymentMethod
from domain.payment.events import GatewayEvent
from infrastructure.external.payments.exceptions import (
    MalformedWebhookError,
    PaymentRecoverableError,
)
from shared.codes.payment_codes import CanonicalStatus, PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)


class BasePaymentClient(PaymentGateway):
    method: PaymentMethod
    provider: str = "base"
    two_phase: bool = False

    def __init__(
        self,
        *,
        currencies: list[str],
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
        order_id_pattern: str = r"^[0-9a-fA-F]{24}$",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or PaymentTimeouts()
        self._retry_cfg = retry or PaymentRetry()
        self._currencies = {c.upper() for c in currencies}
        self._order_id_re = re.compile(order_id_pattern)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        cfg = self._timeouts_cfg
        return httpx.Timeout(cfg.total, connect=cfg.connect, read=cfg.read, write=cfg.write)

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        """Retry transport failures; exhausted retries become PaymentRecoverableError."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(int(self._retry_cfg.max) + 1),
                wait=wait_exponential(multiplier=self._retry_cfg.base_backoff, min=0.1, max=2.0),
                retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
                reraise=True,
            ):
                with attempt:
                    return await fn()
        except httpx.TimeoutException as exc:
            self._log("payment_gateway_timeout", error=type(exc).__name__)
            raise PaymentRecoverableError("Gateway timed out", provider=self.provider, provider_code="timeout") from exc
        except httpx.TransportError as exc:
            self._log("payment_gateway_unreachable", error=type(exc).__name__)
            raise PaymentRecoverableError("Gateway unreachable", provider=self.provider, provider_code="network") from exc

    async def _call_sdk(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking SDK call in a worker thread, bounded by the total timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeouts_cfg.total,
            )
        except asyncio.TimeoutError as exc:
            self._log("payment_gateway_timeout", call=getattr(fn, "__qualname__", str(fn)))
            raise PaymentRecoverableError("Gateway timed out", provider=self.provider, provider_code="timeout") from exc

    # Validation shared by every gateway; runs before any network call
    def ensure_supported(self, order_id: str, currency: str) -> None:
        if not order_id or not self._order_id_re.match(order_id):
            raise DomainValidationException("Invalid order id format", field="order_id", details={"order_id": order_id})
        if (currency or "").upper() not in self._currencies:
            raise DomainValidationException(
                f"Currency {currency} is not supported by {self.method.value}",
                field="currency",
                details={"currency": currency, "supported": sorted(self._currencies)},
            )

    # Default implementations raise to force override where needed
    async def create_payment(self, cmd: CreatePaymentCommand) -> GatewayPaymentResult:  # type: ignore[override]
        raise NotImplementedError

    async def capture_payment(self, transaction_id: str) -> CaptureResult:  # type: ignore[override]
        raise NotImplementedError

    async def refund_payment(self, transaction_id: str, amount: Decimal, currency: str) -> RefundResult:  # type: ignore[override]
        raise NotImplementedError

    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:  # type: ignore[override]
        raise NotImplementedError

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[GatewayEvent]:  # type: ignore[override]
        raise NotImplementedError

    async def get_payment_status(self, transaction_id: str) -> CanonicalStatus:  # type: ignore[override]
        return CanonicalStatus.UNKNOWN

    # Helpers
    def _map_status(self, provider_status: Optional[str]) -> CanonicalStatus:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.method.value, {})
        return mapping.get(provider_status or "", CanonicalStatus.UNKNOWN)

    @staticmethod
    def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in headers.items():
            if key.lower() == wanted:
                return value
        return None

    def _decode_json(self, body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedWebhookError("Webhook body is not valid JSON", provider=self.provider) from exc
        if not isinstance(payload, dict):
            raise MalformedWebhookError("Webhook body must be a JSON object", provider=self.provider)
        return payload

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            method=self.method.value,
            **kwargs,
        )
