"""
Order collaborator port.

Orders are owned by another service; payments only read the fields below
and push status changes back.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class OrderSnapshot:
    id: str
    user_id: str
    total: Decimal
    currency: Optional[str] = None
    status: str = "pending"
    payment_status: Optional[str] = None
    order_number: Optional[str] = None
    customer: dict = field(default_factory=dict)


@runtime_checkable
class OrderPort(Protocol):
    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]: ...

    async def update_status(
        self,
        order_id: str,
        *,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
    ) -> None: ...
