"""
Application service orchestrating payment use-cases.

This class depends only on application ports (orders, identity, gateway)
and the unit of work. Gateway implementations are provided by
infrastructure and injected from the composition root (API/tasks) through
a factory keyed by ``PaymentMethod``, keeping dependencies one-way.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Callable, List, Optional, Tuple

from application.dtos.payments import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    CreatePaymentCommand,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PayerInfo,
    PaymentDTO,
    PaymentTransactionDTO,
    RefundPaymentRequest,
    RefundPaymentResponse,
)
from application.ports.identity import CallerIdentity, IdentityPort
from application.ports.orders import OrderPort, OrderSnapshot
from application.ports.payment_gateway import PaymentGateway
from application.services.reconciliation_service import ReconciliationService
from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import (
    AlreadyPaidException,
    BusinessException,
    DomainValidationException,
    InvalidPaymentStateException,
    OrderNotFoundException,
    PaymentInitiationFailedException,
    PaymentNotFoundException,
    PaymentUnauthorizedException,
    UnsupportedOperationException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
    TransactionType,
)
from domain.payment.events import EventSource, GatewayEvent, GatewayEventType
from domain.payment.state_machine import event_for_status
from shared.codes.payment_codes import CanonicalStatus, PaymentCode


logger = get_logger(__name__)

GatewayFactory = Callable[[PaymentMethod], PaymentGateway]


def _payer_from_order(order: OrderSnapshot) -> PayerInfo:
    customer = order.customer or {}
    return PayerInfo(
        first_name=str(customer.get("first_name") or ""),
        last_name=str(customer.get("last_name") or ""),
        email=customer.get("email"),
        phone=customer.get("phone"),
        address=customer.get("address"),
        city=customer.get("city"),
        country=customer.get("country"),
    )


class PaymentApplicationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        orders: OrderPort,
        identity: IdentityPort,
        gateway_factory: GatewayFactory,
        reconciler: ReconciliationService,
    ) -> None:
        self._uow_factory = uow_factory
        self._orders = orders
        self._identity = identity
        self._gateway_factory = gateway_factory
        self._reconciler = reconciler

    @asynccontextmanager
    async def _gateway(self, method: PaymentMethod) -> AsyncIterator[PaymentGateway]:
        gateway = self._gateway_factory(method)
        try:
            yield gateway
        finally:
            await gateway.aclose()

    async def _load_owned(self, caller: CallerIdentity, payment_id: str) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payments.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        if not caller.is_superuser and not payment.is_owned_by(caller.user_id):
            raise PaymentUnauthorizedException(details={"payment_id": payment_id})
        return payment

    # ------------------------------------------------------------ initiate
    async def initiate(
        self,
        caller: CallerIdentity,
        req: InitiatePaymentRequest,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> InitiatePaymentResponse:
        logger.info(
            "payment_initiate_request",
            order_id=req.order_id,
            method=req.payment_method.value,
            currency=req.currency,
            user_id=caller.user_id,
        )
        order = await self._orders.get_order(req.order_id)
        if order is None:
            raise OrderNotFoundException(req.order_id)
        if not self._identity.owns_order(caller, order):
            raise PaymentUnauthorizedException(details={"order_id": req.order_id})

        async with self._uow_factory(readonly=True) as uow:
            if await uow.payments.has_completed_for_order(order.id):
                raise AlreadyPaidException(order.id)

        async with self._gateway(req.payment_method) as gateway:
            gateway.ensure_supported(order.id, req.currency)

            async with self._uow_factory() as uow:
                payment = await uow.payments.create(
                    Payment.start(
                        order_id=order.id,
                        user_id=order.user_id,
                        amount=order.total,
                        currency=req.currency,
                        method=req.payment_method,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        metadata={"order_number": order.order_number} if order.order_number else {},
                    )
                )

            cmd = CreatePaymentCommand(
                payment_id=payment.id,
                order_id=order.id,
                user_id=order.user_id,
                amount=payment.amount,
                currency=payment.currency,
                description=f"Order {order.order_number or order.id}",
                payer=_payer_from_order(order),
            )
            try:
                result = await gateway.create_payment(cmd)
            except BusinessException as exc:
                await self._mark_initiation_failed(payment, exc.message)
                raise PaymentInitiationFailedException(
                    payment.id,
                    provider=req.payment_method.value,
                    provider_code=getattr(exc, "provider_code", None),
                    retryable=bool(getattr(exc, "retryable", False)),
                ) from exc
            except Exception as exc:
                logger.error(
                    "payment_gateway_unexpected_error",
                    payment_id=payment.id,
                    method=req.payment_method.value,
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                await self._mark_initiation_failed(payment, "Unexpected gateway error")
                raise PaymentInitiationFailedException(
                    payment.id,
                    provider=req.payment_method.value,
                    provider_code="unexpected_error",
                    retryable=False,
                ) from exc

        if not result.success or not result.transaction_id:
            await self._mark_initiation_failed(payment, result.error or "gateway returned no transaction")
            raise PaymentInitiationFailedException(
                payment.id,
                provider=req.payment_method.value,
                provider_code=result.error_code,
            )

        async with self._uow_factory() as uow:
            await uow.payments.compare_and_set_status(
                payment.id,
                PaymentStatus.PENDING,
                PaymentStatus.PROCESSING,
                gateway_transaction_id=result.transaction_id,
                gateway_response=result.raw,
            )

        logger.info(
            "payment_initiate_response",
            payment_id=payment.id,
            order_id=order.id,
            method=req.payment_method.value,
            gateway_status=result.status.value,
        )
        return InitiatePaymentResponse(
            payment_id=payment.id,
            transaction_id=result.transaction_id,
            status=PaymentStatus.PROCESSING.value,
            client_secret=result.client_secret,
            approval_url=result.approval_url,
            action_url=result.action_url,
            payment_data=result.payment_data,
        )

    async def _mark_initiation_failed(self, payment: Payment, reason: str) -> None:
        async with self._uow_factory() as uow:
            await uow.payments.compare_and_set_status(
                payment.id,
                PaymentStatus.PENDING,
                PaymentStatus.FAILED,
                failure_reason=reason,
            )
        logger.warning(
            "payment_initiation_failed",
            payment_id=payment.id,
            order_id=payment.order_id,
            method=payment.method.value,
            reason=reason,
        )

    # ------------------------------------------------------------- confirm
    async def confirm(self, caller: CallerIdentity, req: ConfirmPaymentRequest) -> ConfirmPaymentResponse:
        payment = await self._load_owned(caller, req.payment_id)
        if payment.gateway_transaction_id != req.transaction_id:
            raise DomainValidationException(
                "Transaction id does not belong to this payment",
                field="transaction_id",
                details={"payment_id": payment.id},
            )
        if payment.status is PaymentStatus.COMPLETED:
            return ConfirmPaymentResponse(payment_id=payment.id, payment_status=payment.status.value)

        raw: dict = {}
        async with self._gateway(payment.method) as gateway:
            status = await gateway.get_payment_status(req.transaction_id)
            if gateway.two_phase and status is CanonicalStatus.PROCESSING:
                capture = await gateway.capture_payment(req.transaction_id)
                status = capture.status
                raw = capture.raw

        logger.info(
            "payment_confirm_polled",
            payment_id=payment.id,
            method=payment.method.value,
            gateway_status=status.value,
        )
        event_type = event_for_status(status)
        if event_type is None:
            return ConfirmPaymentResponse(payment_id=payment.id, payment_status=payment.status.value)

        result = await self._reconciler.apply(
            GatewayEvent(
                type=event_type,
                method=payment.method,
                gateway_transaction_id=req.transaction_id,
                raw_payload=raw or {"status": status.value},
                error_message="Payment was not completed at the gateway" if event_type is GatewayEventType.PAYMENT_FAILED else None,
                source=EventSource.CONFIRM,
            )
        )
        return ConfirmPaymentResponse(
            payment_id=payment.id,
            payment_status=(result.status or payment.status).value,
            outcome=result.outcome.value,
        )

    # --------------------------------------------------------------- reads
    async def status(self, caller: CallerIdentity, payment_id: str) -> PaymentDTO:
        return PaymentDTO.from_entity(await self._load_owned(caller, payment_id))

    async def history(self, caller: CallerIdentity, page: int = 1, size: Optional[int] = None) -> Tuple[List[PaymentDTO], int]:
        size = min(size or settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)
        page = max(page, 1)
        async with self._uow_factory(readonly=True) as uow:
            items = await uow.payments.list_by_user(caller.user_id, skip=(page - 1) * size, limit=size)
            total = await uow.payments.count_by_user(caller.user_id)
        return [PaymentDTO.from_entity(p) for p in items], total

    async def transactions(self, caller: CallerIdentity, payment_id: str) -> List[PaymentTransactionDTO]:
        await self._load_owned(caller, payment_id)
        async with self._uow_factory(readonly=True) as uow:
            rows = await uow.transactions.list_by_payment(payment_id)
        return [PaymentTransactionDTO.from_entity(t) for t in rows]

    # -------------------------------------------------------------- refund
    async def refund(
        self,
        caller: CallerIdentity,
        payment_id: str,
        req: RefundPaymentRequest,
    ) -> RefundPaymentResponse:
        if not caller.is_superuser:
            raise PaymentUnauthorizedException("Only administrators can refund payments")
        payment = await self._load_owned(caller, payment_id)
        if payment.status is not PaymentStatus.COMPLETED:
            raise InvalidPaymentStateException(payment.id, payment.status.value, "refund")

        amount = Decimal(str(req.amount)) if req.amount is not None else payment.amount
        if amount > payment.amount:
            raise DomainValidationException(
                "Refund amount exceeds the paid amount",
                field="amount",
                details={"amount": str(amount), "paid": str(payment.amount)},
            )

        logger.info("payment_refund_request", payment_id=payment.id, amount=str(amount), currency=payment.currency)
        async with self._gateway(payment.method) as gateway:
            result = await gateway.refund_payment(payment.gateway_transaction_id or "", amount, payment.currency)

        if result.manual_action_required or not result.success:
            async with self._uow_factory() as uow:
                await uow.transactions.append(
                    PaymentTransaction(
                        payment_id=payment.id,
                        transaction_type=TransactionType.REFUND,
                        amount=amount,
                        currency=payment.currency,
                        status=TransactionStatus.PENDING if result.manual_action_required else TransactionStatus.FAILED,
                        gateway_transaction_id=payment.gateway_transaction_id,
                        gateway_response=result.raw or None,
                        error_message=result.error,
                        event_type=GatewayEventType.REFUNDED.value,
                        source=EventSource.REFUND.value,
                    )
                )
                await uow.payments.record_refund_reason(payment.id, req.reason)
            if result.manual_action_required:
                raise UnsupportedOperationException(
                    result.error or "Refund requires manual action at the gateway",
                    details={"payment_id": payment.id, "manual_action_required": True},
                )
            raise BusinessException(
                code=PaymentCode.PROVIDER_ERROR,
                message=result.error or "Refund was not accepted by the gateway",
                error_type="RefundFailed",
                details={"payment_id": payment.id, "status": result.status},
            )

        outcome = await self._reconciler.apply(
            GatewayEvent(
                type=GatewayEventType.REFUNDED,
                method=payment.method,
                gateway_transaction_id=payment.gateway_transaction_id or "",
                raw_payload=result.raw,
                event_id=result.refund_id,
                amount=amount,
                currency=payment.currency,
                reason=req.reason,
                source=EventSource.REFUND,
            )
        )

        return RefundPaymentResponse(
            payment_id=payment.id,
            payment_status=(outcome.status or payment.status).value,
            refund_id=result.refund_id,
            outcome=outcome.outcome.value,
        )
