import hashlib
from decimal import Decimal
from urllib.parse import urlencode

import httpx
import pytest
import pytest_asyncio

from api.dependencies import get_webhook_service
from application.services.webhook_service import WebhookIngestionService
from core.settings import HashProcessorSettings
from domain.payment.entity import Payment, PaymentMethod, PaymentStatus
from infrastructure.external.payments import PayHereHashClient
from main import app

from fakes import ORDER_ID


MERCHANT_ID = "1211149"
MERCHANT_SECRET = "hash-secret"
WEBHOOK_URL = "/api/v1/webhooks/hash-processor"


def _md5(value: str) -> str:
    return hashlib.md5(value.encode()).hexdigest().upper()


def _notification(payment_id: str, status_code: str = "2", secret: str = MERCHANT_SECRET) -> bytes:
    fields = {
        "merchant_id": MERCHANT_ID,
        "order_id": payment_id,
        "payment_id": "320025071278",
        "payhere_amount": "49.99",
        "payhere_currency": "USD",
        "status_code": status_code,
    }
    fields["md5sig"] = _md5(f"{MERCHANT_ID}{payment_id}49.99USD{status_code}{_md5(secret)}")
    return urlencode(fields).encode()


@pytest_asyncio.fixture
async def client(reconciler):
    def hash_gateway(method):
        return PayHereHashClient(HashProcessorSettings(merchant_id=MERCHANT_ID, merchant_secret=MERCHANT_SECRET))

    app.dependency_overrides[get_webhook_service] = lambda: WebhookIngestionService(hash_gateway, reconciler)
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            yield c
    finally:
        app.dependency_overrides.clear()


async def _processing_payment(uow_factory) -> Payment:
    async with uow_factory() as uow:
        payment = await uow.payments.create(
            Payment.start(
                order_id=ORDER_ID,
                user_id="user-1",
                amount=Decimal("49.99"),
                currency="USD",
                method=PaymentMethod.HASH,
            )
        )
        await uow.payments.compare_and_set_status(
            payment.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING, gateway_transaction_id=payment.id
        )
    return payment


async def _post(client, body: bytes):
    return await client.post(WEBHOOK_URL, content=body, headers={"Content-Type": "application/x-www-form-urlencoded"})


@pytest.mark.asyncio
async def test_signed_notification_completes_payment(client, uow_factory, orders):
    payment = await _processing_payment(uow_factory)

    resp = await _post(client, _notification(payment.id))

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["outcome"] == "applied"
    assert data["payment_status"] == "completed"
    async with uow_factory(readonly=True) as uow:
        assert (await uow.payments.get_by_id(payment.id)).status is PaymentStatus.COMPLETED
    assert orders.updates == [(ORDER_ID, "processing", "paid")]


@pytest.mark.asyncio
async def test_redelivery_is_acknowledged_without_effect(client, uow_factory, orders):
    payment = await _processing_payment(uow_factory)
    body = _notification(payment.id)

    first = await _post(client, body)
    second = await _post(client, body)

    assert first.json()["data"]["outcome"] == "applied"
    assert second.status_code == 200
    assert second.json()["data"]["outcome"] == "duplicate_noop"
    assert len(orders.updates) == 1


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_and_store_untouched(client, uow_factory, orders):
    payment = await _processing_payment(uow_factory)

    resp = await _post(client, _notification(payment.id, secret="forged"))

    assert resp.status_code == 400
    async with uow_factory(readonly=True) as uow:
        assert (await uow.payments.get_by_id(payment.id)).status is PaymentStatus.PROCESSING
        assert await uow.transactions.list_by_payment(payment.id) == []
    assert orders.updates == []


@pytest.mark.asyncio
async def test_pending_notification_is_ignored(client, uow_factory):
    payment = await _processing_payment(uow_factory)

    resp = await _post(client, _notification(payment.id, status_code="0"))

    assert resp.status_code == 200
    assert resp.json()["data"]["outcome"] == "ignored"


@pytest.mark.asyncio
async def test_unknown_transaction_is_acknowledged(client):
    resp = await _post(client, _notification("no-such-payment"))

    assert resp.status_code == 200
    assert resp.json()["data"]["outcome"] == "not_found"


@pytest.mark.asyncio
async def test_unknown_provider_path(client):
    resp = await client.post("/api/v1/webhooks/bitcoin", content=b"{}")
    assert resp.status_code == 422
