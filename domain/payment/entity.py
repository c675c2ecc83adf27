"""
支付领域实体 - 支付聚合根与交易流水
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Any
from enum import Enum

from domain.common.exceptions import DomainValidationException


class PaymentMethod(str, Enum):
    """支付渠道（网关）枚举"""
    CARD = "card-processor"        # 卡组织网关（Stripe）
    WALLET = "wallet-processor"    # 钱包网关（PayPal）
    HASH = "hash-processor"        # 哈希签名的区域网关（PayHere）


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"           # 待支付
    PROCESSING = "processing"     # 处理中
    COMPLETED = "completed"       # 支付成功
    FAILED = "failed"             # 支付失败（终态）
    REFUNDED = "refunded"         # 已退款（终态）

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.FAILED, PaymentStatus.REFUNDED)


class TransactionType(str, Enum):
    AUTHORIZE = "authorize"
    CAPTURE = "capture"
    REFUND = "refund"
    VOID = "void"


class TransactionStatus(str, Enum):
    """流水状态；duplicate/ignored 用于记录未改变支付状态的事件"""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _quantize(amount: Decimal) -> Decimal:
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def new_payment_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Payment:
    """
    支付聚合根 - 一次支付尝试

    业务规则：
    1. 金额必须大于0，币种为3位字母
    2. 状态变更只能经由状态机（domain.payment.state_machine）
    3. 同一订单最多只有一笔支付进入 completed
    4. paid_at 仅在首次进入 completed 时写入
    """

    id: str
    order_id: str
    user_id: str
    amount: Decimal
    currency: str  # ISO-4217
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING

    gateway_transaction_id: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None
    failure_reason: Optional[str] = None

    # 退款相关
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None

    # 时间戳
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # 请求上下文
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        """初始化后验证"""
        if not self.order_id:
            raise DomainValidationException("订单ID不能为空", field="order_id")
        self._validate_amount()
        self._validate_currency()
        self._normalize_timestamps()
        if self.metadata is None:
            self.metadata = {}

    def _validate_amount(self) -> None:
        """业务规则：金额必须大于0"""
        if self.amount is None or self.amount <= 0:
            raise DomainValidationException(
                f"支付金额必须大于0: {self.amount}",
                field="amount"
            )
        self.amount = _quantize(Decimal(str(self.amount)))

    def _validate_currency(self) -> None:
        """业务规则：货币代码必须是3位字母"""
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(
                f"无效的货币代码: {self.currency}",
                field="currency"
            )
        self.currency = self.currency.upper()

    def _normalize_timestamps(self) -> None:
        """规范化所有时间戳为 UTC"""
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.paid_at = _ensure_utc(self.paid_at)
        self.refunded_at = _ensure_utc(self.refunded_at)

    @classmethod
    def start(
        cls,
        *,
        order_id: str,
        user_id: str,
        amount: Decimal,
        currency: str,
        method: PaymentMethod,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> "Payment":
        """创建一笔 pending 状态的新支付尝试"""
        now = datetime.now(timezone.utc)
        return cls(
            id=new_payment_id(),
            order_id=order_id,
            user_id=user_id,
            amount=amount,
            currency=currency,
            method=method,
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=metadata or {},
        )

    def is_owned_by(self, user_id: str) -> bool:
        return str(self.user_id) == str(user_id)


@dataclass
class PaymentTransaction:
    """
    支付流水 - 只追加、不可修改的审计记录

    每处理一次网关事件（包括重复投递）都会写入一条。
    """

    payment_id: str
    transaction_type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    id: Optional[int] = None
    gateway_transaction_id: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    event_type: Optional[str] = None
    source: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount is None or self.amount < 0:
            raise DomainValidationException(
                f"流水金额不能为负: {self.amount}",
                field="amount"
            )
        self.amount = _quantize(Decimal(str(self.amount)))
        self.currency = (self.currency or "").upper()
        self.created_at = _ensure_utc(self.created_at) or datetime.now(timezone.utc)
