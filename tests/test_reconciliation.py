from decimal import Decimal

import pytest

from domain.payment.entity import Payment, PaymentMethod, PaymentStatus, TransactionStatus
from domain.payment.events import EventSource, GatewayEvent, GatewayEventType
from domain.payment.state_machine import Outcome

from fakes import ORDER_ID


async def _seed(uow_factory, *, txid="pi_1", status=PaymentStatus.PROCESSING, order_id=ORDER_ID, method=PaymentMethod.CARD):
    async with uow_factory() as uow:
        payment = await uow.payments.create(
            Payment.start(
                order_id=order_id,
                user_id="user-1",
                amount=Decimal("49.99"),
                currency="USD",
                method=method,
            )
        )
        if status is not PaymentStatus.PENDING:
            await uow.payments.compare_and_set_status(
                payment.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING, gateway_transaction_id=txid
            )
        if status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            await uow.payments.compare_and_set_status(payment.id, PaymentStatus.PROCESSING, status)
        if status is PaymentStatus.REFUNDED:
            await uow.payments.compare_and_set_status(payment.id, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED)
            await uow.payments.compare_and_set_status(payment.id, PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
    return payment


def _event(event_type=GatewayEventType.PAYMENT_SUCCEEDED, txid="pi_1", **kwargs):
    return GatewayEvent(
        type=event_type,
        method=PaymentMethod.CARD,
        gateway_transaction_id=txid,
        raw_payload={"id": "evt_1", "type": event_type.value},
        event_id="evt_1",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_replayed_success_completes_once(uow_factory, reconciler, orders):
    payment = await _seed(uow_factory)

    results = [await reconciler.apply(_event()) for _ in range(5)]

    assert [r.outcome for r in results] == [Outcome.APPLIED] + [Outcome.DUPLICATE_NOOP] * 4
    async with uow_factory(readonly=True) as uow:
        stored = await uow.payments.get_by_id(payment.id)
        ledger = await uow.transactions.list_by_payment(payment.id)
    assert stored.status is PaymentStatus.COMPLETED
    assert stored.paid_at is not None
    assert len(ledger) == 5
    assert [t.status for t in ledger] == [TransactionStatus.SUCCESS] + [TransactionStatus.DUPLICATE] * 4
    assert orders.updates == [(ORDER_ID, "processing", "paid")]


@pytest.mark.asyncio
async def test_paid_at_not_rewritten_by_duplicates(uow_factory, reconciler):
    payment = await _seed(uow_factory)
    await reconciler.apply(_event())
    async with uow_factory(readonly=True) as uow:
        first = (await uow.payments.get_by_id(payment.id)).paid_at

    await reconciler.apply(_event())
    async with uow_factory(readonly=True) as uow:
        assert (await uow.payments.get_by_id(payment.id)).paid_at == first


@pytest.mark.asyncio
async def test_failed_payment_ignores_late_success(uow_factory, reconciler, orders):
    payment = await _seed(uow_factory, status=PaymentStatus.FAILED)

    result = await reconciler.apply(_event())

    assert result.outcome is Outcome.REJECTED
    assert result.status is PaymentStatus.FAILED
    async with uow_factory(readonly=True) as uow:
        ledger = await uow.transactions.list_by_payment(payment.id)
    assert [t.status for t in ledger] == [TransactionStatus.IGNORED]
    assert orders.updates == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event_type, outcome, ledger_status",
    [
        (GatewayEventType.PAYMENT_SUCCEEDED, Outcome.REJECTED, TransactionStatus.IGNORED),
        (GatewayEventType.REFUNDED, Outcome.DUPLICATE_NOOP, TransactionStatus.DUPLICATE),
    ],
)
async def test_refunded_payment_stays_refunded(uow_factory, reconciler, orders, event_type, outcome, ledger_status):
    payment = await _seed(uow_factory, status=PaymentStatus.REFUNDED)

    result = await reconciler.apply(_event(event_type))

    assert result.outcome is outcome
    assert result.status is PaymentStatus.REFUNDED
    async with uow_factory(readonly=True) as uow:
        stored = await uow.payments.get_by_id(payment.id)
        ledger = await uow.transactions.list_by_payment(payment.id)
    assert stored.status is PaymentStatus.REFUNDED
    assert [t.status for t in ledger] == [ledger_status]
    assert orders.updates == []


@pytest.mark.asyncio
async def test_refund_event_stores_reason_with_the_transition(uow_factory, reconciler, orders):
    payment = await _seed(uow_factory, status=PaymentStatus.COMPLETED)

    result = await reconciler.apply(
        _event(GatewayEventType.REFUNDED, reason="customer request", source=EventSource.REFUND)
    )

    assert result.outcome is Outcome.APPLIED
    async with uow_factory(readonly=True) as uow:
        stored = await uow.payments.get_by_id(payment.id)
    assert stored.status is PaymentStatus.REFUNDED
    assert stored.refund_reason == "customer request"
    assert stored.refunded_at is not None
    assert orders.updates == [(ORDER_ID, None, "refunded")]


@pytest.mark.asyncio
async def test_failure_event_records_reason(uow_factory, reconciler, orders):
    payment = await _seed(uow_factory)

    result = await reconciler.apply(
        _event(GatewayEventType.PAYMENT_FAILED, error_message="Your card was declined.")
    )

    assert result.outcome is Outcome.APPLIED
    async with uow_factory(readonly=True) as uow:
        stored = await uow.payments.get_by_id(payment.id)
        ledger = await uow.transactions.list_by_payment(payment.id)
    assert stored.status is PaymentStatus.FAILED
    assert stored.failure_reason == "Your card was declined."
    assert ledger[0].status is TransactionStatus.FAILED
    assert orders.updates == [(ORDER_ID, None, "failed")]


@pytest.mark.asyncio
async def test_refund_event_after_completion(uow_factory, reconciler, orders):
    payment = await _seed(uow_factory, status=PaymentStatus.COMPLETED)

    result = await reconciler.apply(_event(GatewayEventType.REFUNDED, amount=Decimal("49.99"), currency="USD"))

    assert result.outcome is Outcome.APPLIED
    assert result.status is PaymentStatus.REFUNDED
    async with uow_factory(readonly=True) as uow:
        stored = await uow.payments.get_by_id(payment.id)
    assert stored.refunded_at is not None
    assert orders.updates[-1] == (ORDER_ID, None, "refunded")


@pytest.mark.asyncio
async def test_unmatched_transaction_is_not_found(uow_factory, reconciler, orders):
    result = await reconciler.apply(_event(txid="pi_unknown"))

    assert result.outcome is Outcome.NOT_FOUND
    assert result.payment_id is None
    assert orders.updates == []


@pytest.mark.asyncio
async def test_second_completion_on_same_order_is_duplicate_charge(uow_factory, reconciler, orders):
    first = await _seed(uow_factory, txid="pi_a")
    second = await _seed(uow_factory, txid="pi_b")

    assert (await reconciler.apply(_event(txid="pi_a"))).outcome is Outcome.APPLIED
    result = await reconciler.apply(_event(txid="pi_b"))

    assert result.outcome is Outcome.DUPLICATE_NOOP
    async with uow_factory(readonly=True) as uow:
        assert (await uow.payments.get_by_id(first.id)).status is PaymentStatus.COMPLETED
        assert (await uow.payments.get_by_id(second.id)).status is PaymentStatus.PROCESSING
        ledger = await uow.transactions.list_by_payment(second.id)
    assert ledger[-1].status is TransactionStatus.DUPLICATE
    assert "refund required" in ledger[-1].error_message
    # only the winner notified the order
    assert len(orders.updates) == 1


@pytest.mark.asyncio
async def test_failure_does_not_mark_order_failed_when_another_payment_completed(uow_factory, reconciler, orders):
    await _seed(uow_factory, txid="pi_a")
    await _seed(uow_factory, txid="pi_b")
    await reconciler.apply(_event(txid="pi_a"))

    result = await reconciler.apply(_event(GatewayEventType.PAYMENT_FAILED, txid="pi_b"))

    assert result.outcome is Outcome.APPLIED
    assert all(update[2] != "failed" for update in orders.updates)


@pytest.mark.asyncio
async def test_cas_loser_reloads_and_becomes_duplicate(uow_factory, reconciler, monkeypatch):
    """A concurrent writer completes the payment between our read and our CAS."""
    payment = await _seed(uow_factory)
    from infrastructure.repositories.payment_repository import SQLAlchemyPaymentRepository

    original = SQLAlchemyPaymentRepository.compare_and_set_status
    raced = {"done": False}

    async def racing_cas(self, payment_id, expected, new, **kwargs):
        if not raced["done"]:
            raced["done"] = True
            # the other writer wins inside our transaction window
            await original(self, payment_id, expected, new, **kwargs)
            return False
        return await original(self, payment_id, expected, new, **kwargs)

    monkeypatch.setattr(SQLAlchemyPaymentRepository, "compare_and_set_status", racing_cas)

    result = await reconciler.apply(_event())

    assert result.outcome is Outcome.DUPLICATE_NOOP
    assert result.status is PaymentStatus.COMPLETED
    async with uow_factory(readonly=True) as uow:
        ledger = await uow.transactions.list_by_payment(payment.id)
    assert [t.status for t in ledger] == [TransactionStatus.DUPLICATE]


@pytest.mark.asyncio
async def test_order_notification_failure_keeps_transition(uow_factory, reconciler, orders, notify_failures):
    payment = await _seed(uow_factory)
    orders.fail_updates = True

    result = await reconciler.apply(_event())

    assert result.outcome is Outcome.APPLIED
    async with uow_factory(readonly=True) as uow:
        assert (await uow.payments.get_by_id(payment.id)).status is PaymentStatus.COMPLETED
    assert notify_failures == [(ORDER_ID, "processing", "paid")]


@pytest.mark.asyncio
async def test_ledger_records_event_source(uow_factory, reconciler):
    payment = await _seed(uow_factory)
    await reconciler.apply(
        GatewayEvent(
            type=GatewayEventType.PAYMENT_SUCCEEDED,
            method=PaymentMethod.CARD,
            gateway_transaction_id="pi_1",
            source=EventSource.SWEEP,
        )
    )
    async with uow_factory(readonly=True) as uow:
        ledger = await uow.transactions.list_by_payment(payment.id)
    assert ledger[0].source == "sweep"
    assert ledger[0].event_type == "payment_succeeded"
    assert ledger[0].amount == Decimal("49.99")
