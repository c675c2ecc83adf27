"""Test doubles for the order collaborator and payment gateways."""
import dataclasses
from decimal import Decimal
from typing import Optional

from application.dtos.payments import CaptureResult, GatewayPaymentResult, RefundResult
from application.ports.identity import CallerIdentity
from application.ports.orders import OrderSnapshot
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import PaymentMethod
from shared.codes.payment_codes import CanonicalStatus


ORDER_ID = "65a1f0c2e4b0a1b2c3d4e5f6"
OTHER_ORDER_ID = "65a1f0c2e4b0a1b2c3d4e5f7"
OWNER = CallerIdentity(user_id="user-1")
STRANGER = CallerIdentity(user_id="user-2")
ADMIN = CallerIdentity(user_id="admin", is_superuser=True)


class InMemoryOrders:
    """Order collaborator double; records every status push."""

    def __init__(self, *orders: OrderSnapshot):
        self.orders = {o.id: o for o in orders}
        self.updates: list[tuple[str, Optional[str], Optional[str]]] = []
        self.fail_updates = False

    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        return self.orders.get(order_id)

    async def update_status(self, order_id: str, *, status=None, payment_status=None) -> None:
        if self.fail_updates:
            raise RuntimeError("order service down")
        self.updates.append((order_id, status, payment_status))
        order = self.orders.get(order_id)
        if order is not None:
            self.orders[order_id] = dataclasses.replace(
                order,
                status=status or order.status,
                payment_status=payment_status or order.payment_status,
            )


class FakeGateway:
    """PaymentGateway double counting every call it receives."""

    def __init__(self, method: PaymentMethod = PaymentMethod.CARD, *, two_phase: bool = False):
        self.method = method
        self.two_phase = two_phase
        self.calls: list[str] = []
        self.create_error: Optional[Exception] = None
        self.create_result: Optional[GatewayPaymentResult] = None
        self.status = CanonicalStatus.COMPLETED
        self.capture_status = CanonicalStatus.COMPLETED
        self.refund_result = RefundResult(success=True, refund_id="re_1", status="succeeded")
        self.verified = True
        self.event = None
        self.closed = 0
        self.next_txid = "pi_test_1"

    def ensure_supported(self, order_id: str, currency: str) -> None:
        self.calls.append("ensure_supported")
        if currency not in {"USD", "EUR", "LKR"}:
            raise DomainValidationException("unsupported currency", field="currency")

    async def create_payment(self, cmd):
        self.calls.append("create_payment")
        if self.create_error is not None:
            raise self.create_error
        return self.create_result or GatewayPaymentResult(
            success=True,
            transaction_id=self.next_txid,
            status=CanonicalStatus.PENDING,
            client_secret="pi_test_1_secret_abc",
            raw={"id": self.next_txid},
        )

    async def capture_payment(self, transaction_id: str):
        self.calls.append("capture_payment")
        return CaptureResult(success=True, status=self.capture_status, raw={"id": transaction_id})

    async def refund_payment(self, transaction_id: str, amount: Decimal, currency: str):
        self.calls.append("refund_payment")
        return self.refund_result

    async def verify_webhook(self, body: bytes, headers) -> bool:
        self.calls.append("verify_webhook")
        return self.verified

    def parse_webhook(self, body: bytes, headers):
        self.calls.append("parse_webhook")
        return self.event

    async def get_payment_status(self, transaction_id: str):
        self.calls.append("get_payment_status")
        return self.status

    async def aclose(self) -> None:
        self.closed += 1


def make_order(order_id: str = ORDER_ID, *, user_id: str = "user-1", total: str = "49.99", status: str = "pending") -> OrderSnapshot:
    return OrderSnapshot(
        id=order_id,
        user_id=user_id,
        total=Decimal(total),
        currency="USD",
        status=status,
        order_number="ORD-1001",
        customer={"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"},
    )


