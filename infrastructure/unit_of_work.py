"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentRepository,
    SQLAlchemyPaymentTransactionRepository,
)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """
    一个 UoW 对应一个会话、一个事务

    写模式下 payments 的 CAS 更新与 payment_transactions 的流水追加在同一事务中提交；
    只读模式不开启显式事务，退出时丢弃会话。
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        self.session = self._session_factory()
        self.payments = SQLAlchemyPaymentRepository(self.session)
        self.transactions = SQLAlchemyPaymentTransactionRepository(self.session)
        self._committed = False
        if not self._readonly:
            await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            if self.session is not None:
                # close 会回滚只读查询自动开启的事务
                await self.session.close()
            self.session = None
            self.payments = None  # type: ignore[assignment]
            self.transactions = None  # type: ignore[assignment]

    async def commit(self) -> None:
        if self._readonly:
            return
        if self.session is not None and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session is not None and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False


def sqlalchemy_uow_factory(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
) -> Callable[..., SQLAlchemyUnitOfWork]:
    """构造 UoW 工厂，应用服务每个事务调用一次"""

    def _factory(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, readonly=readonly)

    return _factory
