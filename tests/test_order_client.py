import json
from decimal import Decimal

import httpx
import pytest

from infrastructure.external.api_clients import AuthenticationError, TransientAPIError
from infrastructure.external.orders import OrderServiceClient

from fakes import ORDER_ID


def _client(handler, **kwargs):
    return OrderServiceClient(
        "http://orders.test/api/v1",
        api_token="svc-token",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_get_order_unwraps_envelope():
    def handler(request):
        assert request.url.path == f"/api/v1/orders/{ORDER_ID}"
        assert request.headers["Authorization"] == "Bearer svc-token"
        return httpx.Response(200, json={
            "code": 0,
            "data": {"_id": ORDER_ID, "user_id": "user-1", "total": "49.99", "status": "pending", "order_number": "ORD-1001"},
        })

    async with _client(handler) as client:
        order = await client.get_order(ORDER_ID)

    assert order.id == ORDER_ID
    assert order.total == Decimal("49.99")
    assert order.user_id == "user-1"
    assert order.order_number == "ORD-1001"


@pytest.mark.asyncio
async def test_get_order_accepts_bare_object():
    def handler(request):
        return httpx.Response(200, json={"id": ORDER_ID, "customer_id": "user-9", "total_amount": 12.5})

    async with _client(handler) as client:
        order = await client.get_order(ORDER_ID)

    assert order.user_id == "user-9"
    assert order.total == Decimal("12.5")
    assert order.status == "pending"


@pytest.mark.asyncio
async def test_missing_order_is_none():
    async with _client(lambda request: httpx.Response(404, json={"message": "not found"})) as client:
        assert await client.get_order(ORDER_ID) is None


@pytest.mark.asyncio
async def test_update_status_sends_only_given_fields():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"code": 0})

    async with _client(handler) as client:
        await client.update_status(ORDER_ID, payment_status="paid")
        await client.update_status(ORDER_ID)

    assert seen == [("PATCH", f"/api/v1/orders/{ORDER_ID}/status", {"payment_status": "paid"})]


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503, json={"message": "busy"})
        return httpx.Response(200, json={"id": ORDER_ID, "user_id": "user-1", "total": "1.00"})

    async with _client(handler, max_retries=1) as client:
        order = await client.get_order(ORDER_ID)

    assert order is not None
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_exhausted_retries_and_auth_failures_raise():
    async with _client(lambda request: httpx.Response(502), max_retries=0) as client:
        with pytest.raises(TransientAPIError):
            await client.update_status(ORDER_ID, status="processing")

    async with _client(lambda request: httpx.Response(401, json={"message": "bad token"})) as client:
        with pytest.raises(AuthenticationError):
            await client.get_order(ORDER_ID)
