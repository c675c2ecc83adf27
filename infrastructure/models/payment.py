"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint, text
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有状态规则都在 domain.payment.state_machine 中
    """
    __tablename__ = "payments"

    # 主键（不透明ID）
    id = Column(String(32), primary_key=True, comment="支付ID")

    # 外部协作方引用（无外键）
    order_id = Column(String(64), index=True, nullable=False, comment="订单ID")
    user_id = Column(String(64), nullable=False, index=True, comment="用户ID")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="支付金额")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")

    # 网关信息
    method = Column(
        String(32),
        nullable=False,
        comment="支付渠道: card-processor/wallet-processor/hash-processor"
    )
    gateway_transaction_id = Column(String(200), nullable=True, comment="网关交易号")
    gateway_response = Column(JSON, nullable=True, comment="网关最近一次原始响应")

    # 状态
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/processing/completed/failed/refunded"
    )
    failure_reason = Column(Text, nullable=True, comment="失败原因")
    refund_reason = Column(Text, nullable=True, comment="退款原因")

    # 时间戳
    paid_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    refunded_at = Column(DateTime(timezone=True), nullable=True, comment="退款时间")
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    # 请求上下文
    ip_address = Column(String(64), nullable=True, comment="发起支付的IP")
    user_agent = Column(String(500), nullable=True, comment="发起支付的UA")

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 关系
    transactions = relationship(
        "PaymentTransactionModel",
        back_populates="payment",
        lazy="select",
        order_by="PaymentTransactionModel.id",
    )

    # 索引
    __table_args__ = (
        UniqueConstraint("method", "gateway_transaction_id", name="uq_payments_method_gateway_txn"),
        Index("ix_payments_user_created", "user_id", "created_at"),
        Index("ix_payments_status_updated", "status", "updated_at"),
        # 同一订单最多一笔 completed 支付
        Index(
            "uq_payments_order_completed",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id='{self.id}', order_id='{self.order_id}', "
            f"method='{self.method}', amount={self.amount}, status='{self.status}')>"
        )


class PaymentTransactionModel(Base):
    """
    支付流水数据库模型

    只插入不更新，构成独立于支付当前状态的审计账本
    """
    __tablename__ = "payment_transactions"

    # 主键
    id = Column(Integer, primary_key=True, autoincrement=True)

    # 关联支付
    payment_id = Column(
        String(32),
        ForeignKey("payments.id"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )

    transaction_type = Column(String(20), nullable=False, comment="类型: authorize/capture/refund/void")
    status = Column(
        String(20),
        nullable=False,
        comment="状态: success/failed/pending/duplicate/ignored"
    )

    # 金额信息
    amount = Column(Numeric(precision=15, scale=2), nullable=False, comment="金额")
    currency = Column(String(3), nullable=False, comment="货币代码")

    # 网关信息
    gateway_transaction_id = Column(String(200), nullable=True, index=True, comment="网关交易号")
    gateway_response = Column(JSON, nullable=True, comment="原始事件载荷")
    error_message = Column(Text, nullable=True, comment="错误信息")

    # 事件信息
    event_type = Column(String(40), nullable=True, comment="规范事件类型")
    source = Column(String(20), nullable=True, comment="来源: webhook/confirm/sweep/refund")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="创建时间"
    )

    payment = relationship("PaymentModel", back_populates="transactions")

    def __repr__(self):
        return (
            f"<PaymentTransactionModel(id={self.id}, payment_id='{self.payment_id}', "
            f"type='{self.transaction_type}', status='{self.status}')>"
        )
