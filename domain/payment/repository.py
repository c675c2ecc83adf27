"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, List

from .entity import Payment, PaymentMethod, PaymentStatus, PaymentTransaction


class CompletedPaymentConflict(Exception):
    """订单已存在 completed 支付（部分唯一索引冲突），由仓储在写入 completed 时抛出"""

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"order of payment {payment_id} already has a completed payment")


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录（状态必须为 pending）"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付（总是读取数据库最新值）"""
        pass

    @abstractmethod
    async def get_by_gateway_transaction_id(
        self,
        method: PaymentMethod,
        gateway_transaction_id: str,
    ) -> Optional[Payment]:
        """根据网关交易号获取支付"""
        pass

    @abstractmethod
    async def has_completed_for_order(
        self,
        order_id: str,
        exclude_payment_id: Optional[str] = None,
    ) -> bool:
        """订单是否已存在 completed 支付"""
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str, skip: int = 0, limit: int = 20) -> List[Payment]:
        """获取用户的支付列表（按创建时间倒序）"""
        pass

    @abstractmethod
    async def count_by_user(self, user_id: str) -> int:
        """统计用户的支付数量"""
        pass

    @abstractmethod
    async def list_stale(
        self,
        status: PaymentStatus,
        older_than: datetime,
        limit: int = 100,
    ) -> List[Payment]:
        """获取长时间停留在某状态的支付（定时补偿使用）"""
        pass

    @abstractmethod
    async def compare_and_set_status(
        self,
        payment_id: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        *,
        gateway_transaction_id: Optional[str] = None,
        gateway_response: Optional[dict[str, Any]] = None,
        failure_reason: Optional[str] = None,
        refund_reason: Optional[str] = None,
    ) -> bool:
        """
        原子条件更新：仅当当前状态等于 expected 时写入 new

        Returns:
            是否更新成功；False 表示状态已被其他请求修改
        """
        pass

    @abstractmethod
    async def record_refund_reason(self, payment_id: str, reason: Optional[str]) -> None:
        """记录退款原因（不改变状态）"""
        pass


class PaymentTransactionRepository(ABC):
    """支付流水仓储 - 只追加，不提供更新与删除"""

    @abstractmethod
    async def append(self, transaction: PaymentTransaction) -> PaymentTransaction:
        """追加一条流水"""
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: str) -> List[PaymentTransaction]:
        """按时间顺序获取支付的全部流水"""
        pass
