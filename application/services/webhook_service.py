"""
Webhook ingestion (application/services).

Verification always happens before parsing, and nothing reaches the
reconciler without a valid signature. After verification the gateway gets
a 2xx for anything we could read, so it stops redelivering; reconcile
failures are logged for follow-up instead of being surfaced as 5xx.
"""
from __future__ import annotations

from typing import Callable, Mapping

from application.dtos.payments import WebhookAck
from application.ports.payment_gateway import PaymentGateway
from application.services.reconciliation_service import ReconciliationService
from core.logging_config import get_logger
from domain.common.exceptions import PaymentSignatureError
from domain.payment.entity import PaymentMethod


logger = get_logger(__name__)


class WebhookIngestionService:
    def __init__(
        self,
        gateway_factory: Callable[[PaymentMethod], PaymentGateway],
        reconciler: ReconciliationService,
    ) -> None:
        self._gateway_factory = gateway_factory
        self._reconciler = reconciler

    async def handle(self, method: PaymentMethod, body: bytes, headers: Mapping[str, str]) -> WebhookAck:
        gateway = self._gateway_factory(method)
        try:
            if not await gateway.verify_webhook(body, headers):
                logger.warning(
                    "webhook_signature_invalid",
                    provider=method.value,
                    body_size=len(body),
                )
                raise PaymentSignatureError(method.value)
            event = gateway.parse_webhook(body, headers)
        finally:
            await gateway.aclose()

        if event is None:
            logger.info("webhook_ignored", provider=method.value)
            return WebhookAck(provider=method.value, outcome="ignored")

        logger.info(
            "webhook_received",
            provider=method.value,
            event_type=event.type.value,
            event_id=event.event_id,
            gateway_transaction_id=event.gateway_transaction_id,
        )
        try:
            result = await self._reconciler.apply(event)
        except Exception:
            logger.error(
                "webhook_reconcile_failed",
                provider=method.value,
                event_id=event.event_id,
                gateway_transaction_id=event.gateway_transaction_id,
                exc_info=True,
            )
            return WebhookAck(provider=method.value, outcome="error")

        return WebhookAck(
            provider=method.value,
            outcome=result.outcome.value,
            payment_id=result.payment_id,
            payment_status=result.status.value if result.status else None,
        )
