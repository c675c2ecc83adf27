"""
Authenticated-identity port, backed by the external auth subsystem.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from application.ports.orders import OrderSnapshot


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    is_superuser: bool = False


@runtime_checkable
class IdentityPort(Protocol):
    def resolve(self, token: str) -> CallerIdentity: ...

    def owns_order(self, caller: CallerIdentity, order: OrderSnapshot) -> bool: ...
