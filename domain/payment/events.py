"""
支付网关事件 - 各渠道 webhook/轮询结果归一化后的规范事件
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from domain.payment.entity import PaymentMethod


class GatewayEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"


class EventSource(str, Enum):
    """事件来源：网关推送、客户端确认、定时补偿、人工退款"""
    WEBHOOK = "webhook"
    CONFIRM = "confirm"
    SWEEP = "sweep"
    REFUND = "refund"


@dataclass(frozen=True)
class GatewayEvent:
    """规范事件，只通过 gateway_transaction_id 关联支付"""

    type: GatewayEventType
    method: PaymentMethod
    gateway_transaction_id: str
    raw_payload: dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    error_message: Optional[str] = None
    # 管理员发起退款时填写的原因
    reason: Optional[str] = None
    source: EventSource = EventSource.WEBHOOK
