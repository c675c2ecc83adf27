"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import PaymentRepository, PaymentTransactionRepository


class AbstractUnitOfWork(ABC):
    """
    应用层事务边界

    支付状态变更与对应的流水记录必须在同一个 UoW 内完成：
    正常退出时提交，异常退出时回滚，二者要么都落库要么都不落库。
    readonly=True 时只用于查询，退出时不提交。
    """

    payments: PaymentRepository
    transactions: PaymentTransactionRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            await self.rollback()
        elif not self._readonly and not self._committed:
            await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...
