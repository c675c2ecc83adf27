"""Payment compensation tasks: stale-payment sweep and order notification retry."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from celery import shared_task

from ..utils.base_task import BaseTask
from ..utils.dispatcher import TaskDispatcher
from application.services.reconciliation_service import ReconciliationService
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from domain.payment.entity import Payment, PaymentStatus
from domain.payment.events import EventSource, GatewayEvent, GatewayEventType
from domain.payment.state_machine import Outcome, event_for_status
from infrastructure.database import engine
from infrastructure.external.orders import OrderServiceClient
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import sqlalchemy_uow_factory

logger = get_logger(__name__)


async def _sweep_one(payment: Payment, reconciler: ReconciliationService, gateway_factory) -> str:
    gateway = gateway_factory(payment.method)
    try:
        status = await gateway.get_payment_status(payment.gateway_transaction_id or "")
    finally:
        await gateway.aclose()

    event_type = event_for_status(status)
    if event_type is None:
        return "skipped"

    result = await reconciler.apply(
        GatewayEvent(
            type=event_type,
            method=payment.method,
            gateway_transaction_id=payment.gateway_transaction_id or "",
            raw_payload={"status": status.value},
            error_message=(
                "Payment was not completed at the gateway"
                if event_type is GatewayEventType.PAYMENT_FAILED
                else None
            ),
            source=EventSource.SWEEP,
        )
    )
    return "applied" if result.outcome is Outcome.APPLIED else "unchanged"


async def sweep_stale(limit: int, *, uow_factory=None, orders=None, gateway_factory=get_payment_gateway) -> dict:
    """Poll gateways for payments stuck in processing and reconcile what they report."""
    uow_factory = uow_factory or sqlalchemy_uow_factory()
    older_than = datetime.now(timezone.utc) - timedelta(seconds=payment_settings.stale_after_seconds)
    async with uow_factory(readonly=True) as uow:
        stale = await uow.payments.list_stale(PaymentStatus.PROCESSING, older_than, limit)

    owns_orders = orders is None
    orders = orders or OrderServiceClient()
    reconciler = ReconciliationService(
        uow_factory,
        orders,
        on_notify_failure=TaskDispatcher().enqueue_order_notification,
    )
    counts = {"checked": len(stale), "applied": 0, "unchanged": 0, "skipped": 0, "errors": 0}
    try:
        for payment in stale:
            try:
                counts[await _sweep_one(payment, reconciler, gateway_factory)] += 1
            except BusinessException as exc:
                counts["errors"] += 1
                logger.warning(
                    "sweep_payment_rejected",
                    payment_id=payment.id,
                    method=payment.method.value,
                    error_type=exc.error_type,
                )
            except Exception:
                # keep sweeping the rest of the batch
                counts["errors"] += 1
                logger.error(
                    "sweep_payment_failed",
                    payment_id=payment.id,
                    method=payment.method.value,
                    exc_info=True,
                )
    finally:
        if owns_orders:
            await orders.close()

    logger.info("sweep_stale_payments_done", **counts)
    return counts


async def _run_sweep(limit: int) -> dict:
    try:
        return await sweep_stale(limit)
    finally:
        # pooled connections belong to this event loop
        await engine.dispose()


async def _notify(order_id: str, status: Optional[str], payment_status: Optional[str]) -> None:
    async with OrderServiceClient() as client:
        await client.update_status(order_id, status=status, payment_status=payment_status)


@shared_task(name="payments.sweep_stale_payments", bind=True, base=BaseTask)
def sweep_stale_payments(self, limit: Optional[int] = None) -> dict:
    """Reconcile payments stuck in processing (missed webhooks, abandoned confirms)."""
    return asyncio.run(_run_sweep(limit or payment_settings.sweep_batch_size))


@shared_task(
    name="payments.notify_order",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def notify_order(self, order_id: str, status: Optional[str] = None, payment_status: Optional[str] = None) -> None:
    """Push a payment outcome to the order service after an inline attempt failed."""
    logger.info(
        "order_notification_retry",
        order_id=order_id,
        status=status,
        payment_status=payment_status,
        attempt=self.request.retries,
    )
    asyncio.run(_notify(order_id, status, payment_status))
