from decimal import Decimal

import pytest

from application.dtos.payments import (
    ConfirmPaymentRequest,
    GatewayPaymentResult,
    InitiatePaymentRequest,
    RefundPaymentRequest,
    RefundResult,
)
from domain.common.exceptions import (
    AlreadyPaidException,
    DomainValidationException,
    InvalidPaymentStateException,
    OrderNotFoundException,
    PaymentInitiationFailedException,
    PaymentNotFoundException,
    PaymentUnauthorizedException,
    UnsupportedOperationException,
)
from domain.payment.entity import PaymentMethod, PaymentStatus, TransactionStatus, TransactionType
from domain.payment.events import GatewayEvent, GatewayEventType
from infrastructure.external.payments.exceptions import PaymentProviderError, PaymentRecoverableError
from shared.codes.payment_codes import CanonicalStatus

from fakes import ADMIN, ORDER_ID, OTHER_ORDER_ID, OWNER, STRANGER


def _initiate(method=PaymentMethod.CARD, currency="USD", order_id=ORDER_ID):
    return InitiatePaymentRequest(order_id=order_id, payment_method=method, currency=currency)


async def _payments_for(uow_factory, user_id="user-1"):
    async with uow_factory(readonly=True) as uow:
        return await uow.payments.list_by_user(user_id)


@pytest.mark.asyncio
async def test_initiate_card_payment_for_order_total(service, gateway, uow_factory):
    resp = await service.initiate(OWNER, _initiate(), ip_address="10.0.0.1", user_agent="pytest")

    assert resp.transaction_id == "pi_test_1"
    assert resp.client_secret == "pi_test_1_secret_abc"
    assert resp.status == "processing"
    [payment] = await _payments_for(uow_factory)
    assert payment.amount == Decimal("49.99")
    assert payment.currency == "USD"
    assert payment.status is PaymentStatus.PROCESSING
    assert payment.gateway_transaction_id == "pi_test_1"
    assert payment.ip_address == "10.0.0.1"
    assert gateway.closed == 1


@pytest.mark.asyncio
async def test_initiate_unknown_order(service, gateway):
    with pytest.raises(OrderNotFoundException):
        await service.initiate(OWNER, _initiate(order_id=OTHER_ORDER_ID))
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_initiate_by_non_owner_creates_nothing(service, gateway, uow_factory):
    with pytest.raises(PaymentUnauthorizedException):
        await service.initiate(STRANGER, _initiate())
    assert gateway.calls == []
    assert await _payments_for(uow_factory) == []
    assert await _payments_for(uow_factory, "user-2") == []


@pytest.mark.asyncio
async def test_superuser_may_initiate_for_any_order(service):
    resp = await service.initiate(ADMIN, _initiate())
    assert resp.payment_id


@pytest.mark.asyncio
async def test_unsupported_currency_creates_no_row(service, gateway, uow_factory):
    with pytest.raises(DomainValidationException):
        await service.initiate(OWNER, _initiate(currency="GBP"))
    assert "create_payment" not in gateway.calls
    assert await _payments_for(uow_factory) == []


@pytest.mark.asyncio
async def test_already_paid_order_never_reaches_gateway(service, gateway, reconciler):
    resp = await service.initiate(OWNER, _initiate())
    await reconciler.apply(
        GatewayEvent(type=GatewayEventType.PAYMENT_SUCCEEDED, method=PaymentMethod.CARD, gateway_transaction_id=resp.transaction_id)
    )
    gateway.calls.clear()

    with pytest.raises(AlreadyPaidException):
        await service.initiate(OWNER, _initiate())
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_gateway_error_fails_payment(service, gateway, uow_factory):
    gateway.create_error = PaymentProviderError("Card was declined", provider="stripe", provider_code="card_declined")

    with pytest.raises(PaymentInitiationFailedException) as exc_info:
        await service.initiate(OWNER, _initiate())

    assert exc_info.value.details["provider_code"] == "card_declined"
    assert exc_info.value.details["retryable"] is False
    [payment] = await _payments_for(uow_factory)
    assert payment.status is PaymentStatus.FAILED
    assert payment.failure_reason == "Card was declined"


@pytest.mark.asyncio
async def test_unexpected_gateway_exception_fails_payment(service, gateway, uow_factory):
    gateway.create_error = ValueError("Expecting value: line 1 column 1")

    with pytest.raises(PaymentInitiationFailedException) as exc_info:
        await service.initiate(OWNER, _initiate())

    assert exc_info.value.details["provider_code"] == "unexpected_error"
    assert exc_info.value.details["retryable"] is False
    assert "Expecting value" not in exc_info.value.message
    [payment] = await _payments_for(uow_factory)
    assert payment.status is PaymentStatus.FAILED
    assert payment.failure_reason == "Unexpected gateway error"
    assert gateway.closed == 1


@pytest.mark.asyncio
async def test_gateway_timeout_is_retryable_failure(service, gateway, uow_factory):
    gateway.create_error = PaymentRecoverableError("Gateway timed out", provider="paypal", provider_code="timeout")

    with pytest.raises(PaymentInitiationFailedException) as exc_info:
        await service.initiate(OWNER, _initiate(PaymentMethod.WALLET))

    assert exc_info.value.details["retryable"] is True
    [payment] = await _payments_for(uow_factory)
    assert payment.status is PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_unsuccessful_gateway_result_fails_payment(service, gateway, uow_factory):
    gateway.create_result = GatewayPaymentResult(success=False, error="no approval link", error_code="no_approval_link")

    with pytest.raises(PaymentInitiationFailedException):
        await service.initiate(OWNER, _initiate())
    [payment] = await _payments_for(uow_factory)
    assert payment.status is PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_card_payment_end_to_end(service, gateway, reconciler, orders, uow_factory):
    """$49.99 order paid by card: one webhook completes it, a replay changes nothing."""
    resp = await service.initiate(OWNER, _initiate())
    event = GatewayEvent(
        type=GatewayEventType.PAYMENT_SUCCEEDED,
        method=PaymentMethod.CARD,
        gateway_transaction_id=resp.transaction_id,
        raw_payload={"id": "evt_1"},
        amount=Decimal("49.99"),
        currency="USD",
    )

    await reconciler.apply(event)
    await reconciler.apply(event)

    status = await service.status(OWNER, resp.payment_id)
    assert status.status == "completed"
    assert status.paid_at is not None
    ledger = await service.transactions(OWNER, resp.payment_id)
    assert [t.status for t in ledger] == ["success", "duplicate"]
    assert orders.orders[ORDER_ID].status == "processing"
    assert orders.orders[ORDER_ID].payment_status == "paid"
    assert len(orders.updates) == 1


@pytest.mark.asyncio
async def test_confirm_two_phase_captures_then_completes(service, gateway, orders):
    gateway.two_phase = True
    gateway.status = CanonicalStatus.PROCESSING
    resp = await service.initiate(OWNER, _initiate(PaymentMethod.WALLET))

    result = await service.confirm(OWNER, ConfirmPaymentRequest(payment_id=resp.payment_id, transaction_id=resp.transaction_id))

    assert "capture_payment" in gateway.calls
    assert result.payment_status == "completed"
    assert result.outcome == "applied"
    assert orders.updates == [(ORDER_ID, "processing", "paid")]


@pytest.mark.asyncio
async def test_confirm_pending_leaves_payment_unchanged(service, gateway):
    gateway.status = CanonicalStatus.PENDING
    resp = await service.initiate(OWNER, _initiate())

    result = await service.confirm(OWNER, ConfirmPaymentRequest(payment_id=resp.payment_id, transaction_id=resp.transaction_id))

    assert result.payment_status == "processing"
    assert result.outcome is None


@pytest.mark.asyncio
async def test_confirm_rejects_foreign_transaction_id(service):
    resp = await service.initiate(OWNER, _initiate())
    with pytest.raises(DomainValidationException):
        await service.confirm(OWNER, ConfirmPaymentRequest(payment_id=resp.payment_id, transaction_id="pi_other"))


@pytest.mark.asyncio
async def test_confirm_completed_short_circuits(service, gateway, reconciler):
    resp = await service.initiate(OWNER, _initiate())
    await reconciler.apply(
        GatewayEvent(type=GatewayEventType.PAYMENT_SUCCEEDED, method=PaymentMethod.CARD, gateway_transaction_id=resp.transaction_id)
    )
    gateway.calls.clear()

    result = await service.confirm(OWNER, ConfirmPaymentRequest(payment_id=resp.payment_id, transaction_id=resp.transaction_id))

    assert result.payment_status == "completed"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_status_is_owner_only(service):
    resp = await service.initiate(OWNER, _initiate())
    with pytest.raises(PaymentUnauthorizedException):
        await service.status(STRANGER, resp.payment_id)
    assert (await service.status(ADMIN, resp.payment_id)).id == resp.payment_id
    with pytest.raises(PaymentNotFoundException):
        await service.status(OWNER, "missing")


@pytest.mark.asyncio
async def test_history_is_paginated_newest_first(service, gateway):
    ids = []
    for i in range(3):
        gateway.next_txid = f"pi_{i}"
        ids.append((await service.initiate(OWNER, _initiate())).payment_id)

    items, total = await service.history(OWNER, page=1, size=2)
    assert total == 3
    assert [p.id for p in items] == [ids[2], ids[1]]
    items, _ = await service.history(OWNER, page=2, size=2)
    assert [p.id for p in items] == [ids[0]]
    assert (await service.history(STRANGER))[1] == 0


@pytest.mark.asyncio
async def test_refund_requires_superuser(service):
    resp = await service.initiate(OWNER, _initiate())
    with pytest.raises(PaymentUnauthorizedException):
        await service.refund(OWNER, resp.payment_id, RefundPaymentRequest())


@pytest.mark.asyncio
async def test_refund_requires_completed_payment(service):
    resp = await service.initiate(OWNER, _initiate())
    with pytest.raises(InvalidPaymentStateException):
        await service.refund(ADMIN, resp.payment_id, RefundPaymentRequest())


@pytest.mark.asyncio
async def test_refund_completed_card_payment(service, gateway, reconciler, orders):
    resp = await service.initiate(OWNER, _initiate())
    await reconciler.apply(
        GatewayEvent(type=GatewayEventType.PAYMENT_SUCCEEDED, method=PaymentMethod.CARD, gateway_transaction_id=resp.transaction_id)
    )

    with pytest.raises(DomainValidationException):
        await service.refund(ADMIN, resp.payment_id, RefundPaymentRequest(amount=Decimal("50.00")))

    result = await service.refund(ADMIN, resp.payment_id, RefundPaymentRequest(reason="customer request"))

    assert result.payment_status == "refunded"
    assert result.refund_id == "re_1"
    payment = await service.status(OWNER, resp.payment_id)
    assert payment.refund_reason == "customer request"
    assert orders.updates[-1] == (ORDER_ID, None, "refunded")


@pytest.mark.asyncio
async def test_manual_refund_is_unsupported_operation(service, gateway, reconciler):
    gateway.method = PaymentMethod.HASH
    gateway.refund_result = RefundResult(
        success=False,
        status="manual_action_required",
        manual_action_required=True,
        error="Refunds for this gateway must be issued from the merchant portal",
    )
    resp = await service.initiate(OWNER, _initiate(PaymentMethod.HASH, currency="LKR"))
    await reconciler.apply(
        GatewayEvent(type=GatewayEventType.PAYMENT_SUCCEEDED, method=PaymentMethod.HASH, gateway_transaction_id=resp.transaction_id)
    )

    with pytest.raises(UnsupportedOperationException) as exc_info:
        await service.refund(ADMIN, resp.payment_id, RefundPaymentRequest(reason="damaged"))

    assert exc_info.value.details["manual_action_required"] is True
    payment = await service.status(ADMIN, resp.payment_id)
    assert payment.status == "completed"
    assert payment.refund_reason == "damaged"
    ledger = await service.transactions(ADMIN, resp.payment_id)
    assert (ledger[-1].transaction_type, ledger[-1].status) == (TransactionType.REFUND.value, TransactionStatus.PENDING.value)
