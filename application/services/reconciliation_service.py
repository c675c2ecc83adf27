"""
Reconciliation service (application/services) - applies canonical gateway
events to payments.

Webhooks, client confirmation, the stale-payment sweep and admin refunds all
end up here, so a payment has exactly one code path that changes its status:

1. find the payment by ``(method, gateway_transaction_id)``
2. ``decide`` the transition (pure, no I/O)
3. compare-and-set the status row; on a miss reload and decide again
4. append one ledger row whatever the outcome
5. after commit, push the new payment state to the order service
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from application.ports.orders import OrderPort
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    Payment,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
    TransactionType,
)
from domain.payment.events import GatewayEvent, GatewayEventType
from domain.payment.state_machine import (
    Outcome,
    Transition,
    decide,
    duplicate_charge,
)
from domain.payment.repository import CompletedPaymentConflict


logger = get_logger(__name__)

# CAS retries before giving up on a row that keeps changing underneath us
_MAX_CAS_ATTEMPTS = 5

NotifyFailureHook = Callable[[str, Optional[str], Optional[str]], None]


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    payment_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    transaction_id: Optional[int] = None  # ledger row id


def _ledger_type(event_type: GatewayEventType) -> TransactionType:
    if event_type is GatewayEventType.REFUNDED:
        return TransactionType.REFUND
    return TransactionType.CAPTURE


def _ledger_status(transition: Transition, event_type: GatewayEventType) -> TransactionStatus:
    if transition.outcome is Outcome.APPLIED:
        if event_type is GatewayEventType.PAYMENT_FAILED:
            return TransactionStatus.FAILED
        return TransactionStatus.SUCCESS
    if transition.outcome is Outcome.DUPLICATE_NOOP:
        return TransactionStatus.DUPLICATE
    return TransactionStatus.IGNORED


class ReconciliationService:
    """Single writer of payment status transitions."""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        orders: OrderPort,
        *,
        on_notify_failure: Optional[NotifyFailureHook] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._orders = orders
        self._on_notify_failure = on_notify_failure

    async def apply(self, event: GatewayEvent) -> ReconcileResult:
        try:
            result, applied = await self._apply_in_transaction(event)
        except CompletedPaymentConflict as exc:
            # another payment of the same order won the completed slot
            return await self._record_conflict(event, exc.payment_id)

        if applied is not None:
            payment, transition = applied
            await self._notify_order(payment, transition)
        return result

    async def _apply_in_transaction(
        self, event: GatewayEvent
    ) -> tuple[ReconcileResult, Optional[tuple[Payment, Transition]]]:
        async with self._uow_factory() as uow:
            payment = await uow.payments.get_by_gateway_transaction_id(
                event.method, event.gateway_transaction_id
            )
            if payment is None:
                logger.warning(
                    "reconcile_unmatched_event",
                    method=event.method.value,
                    gateway_transaction_id=event.gateway_transaction_id,
                    event_type=event.type.value,
                    event_id=event.event_id,
                    source=event.source.value,
                )
                return ReconcileResult(outcome=Outcome.NOT_FOUND), None

            transition = await self._settle(uow, payment, event)
            if transition.outcome is Outcome.APPLIED:
                payment.status = transition.to_status  # type: ignore[assignment]

            ledger = await uow.transactions.append(
                PaymentTransaction(
                    payment_id=payment.id,
                    transaction_type=_ledger_type(event.type),
                    amount=event.amount if event.amount is not None else payment.amount,
                    currency=event.currency or payment.currency,
                    status=_ledger_status(transition, event.type),
                    gateway_transaction_id=event.gateway_transaction_id,
                    gateway_response=event.raw_payload,
                    error_message=event.error_message if transition.outcome is Outcome.APPLIED else transition.reason,
                    event_type=event.type.value,
                    source=event.source.value,
                )
            )

            if transition.outcome is Outcome.APPLIED:
                logger.info(
                    "payment_transition_applied",
                    payment_id=payment.id,
                    order_id=payment.order_id,
                    from_status=transition.from_status.value if transition.from_status else None,
                    to_status=payment.status.value,
                    source=event.source.value,
                )
            else:
                logger.info(
                    "reconcile_duplicate_event" if transition.outcome is Outcome.DUPLICATE_NOOP else "reconcile_rejected_event",
                    payment_id=payment.id,
                    status=payment.status.value,
                    event_type=event.type.value,
                    event_id=event.event_id,
                    source=event.source.value,
                    reason=transition.reason,
                )

            result = ReconcileResult(
                outcome=transition.outcome,
                payment_id=payment.id,
                status=payment.status,
                transaction_id=ledger.id,
            )
            applied = (payment, transition) if transition.notify_order else None
            return result, applied

    async def _settle(self, uow: AbstractUnitOfWork, payment: Payment, event: GatewayEvent) -> Transition:
        """Decide and CAS until the row agrees with the decision."""
        for _ in range(_MAX_CAS_ATTEMPTS):
            transition = decide(payment.status, event.type)

            if (
                transition.outcome is Outcome.APPLIED
                and transition.to_status is PaymentStatus.COMPLETED
                and await uow.payments.has_completed_for_order(payment.order_id, exclude_payment_id=payment.id)
            ):
                transition = duplicate_charge(payment.status, payment.order_id)
                logger.error(
                    "duplicate_charge_detected",
                    payment_id=payment.id,
                    order_id=payment.order_id,
                    gateway_transaction_id=event.gateway_transaction_id,
                    amount=str(payment.amount),
                    currency=payment.currency,
                )

            if transition.outcome is not Outcome.APPLIED:
                return transition

            swapped = await uow.payments.compare_and_set_status(
                payment.id,
                transition.from_status,  # type: ignore[arg-type]
                transition.to_status,  # type: ignore[arg-type]
                gateway_response=event.raw_payload or None,
                failure_reason=event.error_message if event.type is GatewayEventType.PAYMENT_FAILED else None,
                refund_reason=event.reason if event.type is GatewayEventType.REFUNDED else None,
            )
            if swapped:
                return transition

            reloaded = await uow.payments.get_by_id(payment.id)
            if reloaded is None:
                break
            payment.status = reloaded.status

        logger.warning(
            "reconcile_cas_exhausted",
            payment_id=payment.id,
            status=payment.status.value,
            event_type=event.type.value,
        )
        return Transition(
            outcome=Outcome.REJECTED,
            from_status=payment.status,
            to_status=payment.status,
            reason="payment kept changing concurrently",
        )

    async def _record_conflict(self, event: GatewayEvent, payment_id: str) -> ReconcileResult:
        async with self._uow_factory() as uow:
            payment = await uow.payments.get_by_id(payment_id)
            if payment is None:
                return ReconcileResult(outcome=Outcome.NOT_FOUND)
            transition = duplicate_charge(payment.status, payment.order_id)
            logger.error(
                "duplicate_charge_detected",
                payment_id=payment.id,
                order_id=payment.order_id,
                gateway_transaction_id=event.gateway_transaction_id,
                amount=str(payment.amount),
                currency=payment.currency,
            )
            ledger = await uow.transactions.append(
                PaymentTransaction(
                    payment_id=payment.id,
                    transaction_type=_ledger_type(event.type),
                    amount=event.amount if event.amount is not None else payment.amount,
                    currency=event.currency or payment.currency,
                    status=TransactionStatus.DUPLICATE,
                    gateway_transaction_id=event.gateway_transaction_id,
                    gateway_response=event.raw_payload,
                    error_message=transition.reason,
                    event_type=event.type.value,
                    source=event.source.value,
                )
            )
            return ReconcileResult(
                outcome=Outcome.DUPLICATE_NOOP,
                payment_id=payment.id,
                status=payment.status,
                transaction_id=ledger.id,
            )

    async def _notify_order(self, payment: Payment, transition: Transition) -> None:
        order_status: Optional[str] = None
        payment_status: Optional[str] = None
        try:
            if transition.to_status is PaymentStatus.COMPLETED:
                payment_status = "paid"
                order = await self._orders.get_order(payment.order_id)
                if order is not None and order.status == "pending":
                    order_status = "processing"
            elif transition.to_status is PaymentStatus.FAILED:
                async with self._uow_factory(readonly=True) as uow:
                    if await uow.payments.has_completed_for_order(payment.order_id, exclude_payment_id=payment.id):
                        return
                payment_status = "failed"
            elif transition.to_status is PaymentStatus.REFUNDED:
                payment_status = "refunded"
            else:
                return

            await self._orders.update_status(
                payment.order_id, status=order_status, payment_status=payment_status
            )
            logger.info(
                "order_notified",
                order_id=payment.order_id,
                payment_id=payment.id,
                status=order_status,
                payment_status=payment_status,
            )
        except Exception as exc:
            logger.warning(
                "order_notification_failed",
                order_id=payment.order_id,
                payment_id=payment.id,
                error=str(exc),
                exc_info=True,
            )
            if self._on_notify_failure is not None and payment_status is not None:
                self._on_notify_failure(payment.order_id, order_status, payment_status)
