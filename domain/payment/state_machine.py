"""
支付状态机 - 纯函数，不做任何持久化

    pending -> processing -> {completed | failed}
    pending -> {completed | failed}
    completed -> refunded

failed 与 refunded 为终态；completed 只能转为 refunded。
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from domain.payment.entity import PaymentStatus
from domain.payment.events import GatewayEventType
from shared.codes.payment_codes import CanonicalStatus


class Outcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE_NOOP = "duplicate_noop"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Transition:
    outcome: Outcome
    from_status: Optional[PaymentStatus]
    to_status: Optional[PaymentStatus]
    notify_order: bool = False
    reason: Optional[str] = None

    @property
    def changes_state(self) -> bool:
        return self.outcome is Outcome.APPLIED


# 事件类型 -> (允许的源状态, 目标状态)
_RULES: dict[GatewayEventType, tuple[frozenset[PaymentStatus], PaymentStatus]] = {
    GatewayEventType.PAYMENT_SUCCEEDED: (
        frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING}),
        PaymentStatus.COMPLETED,
    ),
    GatewayEventType.PAYMENT_FAILED: (
        frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING}),
        PaymentStatus.FAILED,
    ),
    GatewayEventType.REFUNDED: (
        frozenset({PaymentStatus.COMPLETED}),
        PaymentStatus.REFUNDED,
    ),
}


def decide(current: PaymentStatus, event_type: GatewayEventType) -> Transition:
    """根据当前状态与事件计算下一步；不修改任何对象"""
    allowed_from, target = _RULES[event_type]

    if current == target:
        return Transition(
            outcome=Outcome.DUPLICATE_NOOP,
            from_status=current,
            to_status=current,
            reason="duplicate delivery; no state change",
        )

    if current in allowed_from:
        return Transition(
            outcome=Outcome.APPLIED,
            from_status=current,
            to_status=target,
            notify_order=True,
        )

    return Transition(
        outcome=Outcome.REJECTED,
        from_status=current,
        to_status=current,
        reason=f"transition {current.value} -> {target.value} not permitted",
    )


def duplicate_charge(current: PaymentStatus, order_id: str) -> Transition:
    """同一订单已有 completed 支付时，新的成功事件只记录、不变更状态"""
    return Transition(
        outcome=Outcome.DUPLICATE_NOOP,
        from_status=current,
        to_status=current,
        reason=f"order {order_id} already has a completed payment; refund required",
    )


def event_for_status(status: CanonicalStatus) -> Optional[GatewayEventType]:
    """把轮询得到的规范状态映射为事件；非终结状态返回 None"""
    if status is CanonicalStatus.COMPLETED:
        return GatewayEventType.PAYMENT_SUCCEEDED
    if status is CanonicalStatus.FAILED:
        return GatewayEventType.PAYMENT_FAILED
    return None
