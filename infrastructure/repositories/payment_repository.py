"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError

from domain.payment.entity import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
    TransactionType,
)
from domain.payment.repository import (
    CompletedPaymentConflict,
    PaymentRepository,
    PaymentTransactionRepository,
)
from infrastructure.models.payment import PaymentModel, PaymentTransactionModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            order_id=model.order_id,
            user_id=model.user_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            method=PaymentMethod(model.method),
            status=PaymentStatus(model.status),
            gateway_transaction_id=model.gateway_transaction_id,
            gateway_response=model.gateway_response,
            failure_reason=model.failure_reason,
            refunded_at=model.refunded_at,
            refund_reason=model.refund_reason,
            paid_at=model.paid_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            ip_address=model.ip_address,
            user_agent=model.user_agent,
            metadata=model.extra_metadata or {},
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            order_id=entity.order_id,
            user_id=entity.user_id,
            amount=entity.amount,
            currency=entity.currency,
            method=entity.method.value,
            status=entity.status.value,
            gateway_transaction_id=entity.gateway_transaction_id,
            gateway_response=entity.gateway_response,
            failure_reason=entity.failure_reason,
            refund_reason=entity.refund_reason,
            paid_at=entity.paid_at,
            refunded_at=entity.refunded_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            ip_address=entity.ip_address,
            user_agent=entity.user_agent,
            extra_metadata=entity.metadata,
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        await self.session.flush()
        await self.session.refresh(db_payment)
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            order_id=db_payment.order_id,
            method=db_payment.method,
            amount=str(db_payment.amount),
            currency=db_payment.currency,
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_gateway_transaction_id(
        self,
        method: PaymentMethod,
        gateway_transaction_id: str,
    ) -> Optional[Payment]:
        """根据网关交易号获取支付"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.method == method.value,
                PaymentModel.gateway_transaction_id == gateway_transaction_id,
            )
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def has_completed_for_order(
        self,
        order_id: str,
        exclude_payment_id: Optional[str] = None,
    ) -> bool:
        query = select(func.count()).select_from(PaymentModel).where(
            PaymentModel.order_id == order_id,
            PaymentModel.status == PaymentStatus.COMPLETED.value,
        )
        if exclude_payment_id:
            query = query.where(PaymentModel.id != exclude_payment_id)
        result = await self.session.execute(query)
        return (result.scalar() or 0) > 0

    async def list_by_user(self, user_id: str, skip: int = 0, limit: int = 20) -> List[Payment]:
        """获取用户的支付列表"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.user_id == user_id)
            .order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def count_by_user(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(PaymentModel).where(PaymentModel.user_id == user_id)
        )
        return int(result.scalar() or 0)

    async def list_stale(
        self,
        status: PaymentStatus,
        older_than: datetime,
        limit: int = 100,
    ) -> List[Payment]:
        """获取 updated_at 早于 older_than 的指定状态支付"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.status == status.value,
                PaymentModel.updated_at < older_than,
                PaymentModel.gateway_transaction_id.is_not(None),
            )
            .order_by(PaymentModel.updated_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

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
        """单行条件更新：UPDATE ... WHERE id = ? AND status = ?"""
        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {"status": new.value, "updated_at": now}
        if gateway_transaction_id is not None:
            values["gateway_transaction_id"] = gateway_transaction_id
        if gateway_response is not None:
            values["gateway_response"] = gateway_response
        if failure_reason is not None:
            values["failure_reason"] = failure_reason
        if new is PaymentStatus.COMPLETED:
            # completed 不可重入，paid_at 因此只写一次
            values["paid_at"] = now
        if new is PaymentStatus.REFUNDED:
            values["refunded_at"] = now
            if refund_reason is not None:
                values["refund_reason"] = refund_reason

        stmt = (
            update(PaymentModel)
            .where(PaymentModel.id == payment_id, PaymentModel.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning(
                "payment_cas_conflict",
                payment_id=payment_id,
                expected=expected.value,
                new=new.value,
                error=str(e.orig) if getattr(e, "orig", None) else str(e),
            )
            if new is PaymentStatus.COMPLETED:
                raise CompletedPaymentConflict(payment_id) from e
            raise

        swapped = result.rowcount == 1
        logger.info(
            "payment_cas",
            payment_id=payment_id,
            expected=expected.value,
            new=new.value,
            swapped=swapped,
        )
        return swapped

    async def record_refund_reason(self, payment_id: str, reason: Optional[str]) -> None:
        await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .values(refund_reason=reason, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )


class SQLAlchemyPaymentTransactionRepository(PaymentTransactionRepository):
    """支付流水仓储的SQLAlchemy实现（只插入）"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentTransactionModel) -> PaymentTransaction:
        return PaymentTransaction(
            id=model.id,
            payment_id=model.payment_id,
            transaction_type=TransactionType(model.transaction_type),
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=TransactionStatus(model.status),
            gateway_transaction_id=model.gateway_transaction_id,
            gateway_response=model.gateway_response,
            error_message=model.error_message,
            event_type=model.event_type,
            source=model.source,
            created_at=model.created_at,
        )

    async def append(self, transaction: PaymentTransaction) -> PaymentTransaction:
        """追加流水"""
        db_txn = PaymentTransactionModel(
            payment_id=transaction.payment_id,
            transaction_type=transaction.transaction_type.value,
            amount=transaction.amount,
            currency=transaction.currency,
            status=transaction.status.value,
            gateway_transaction_id=transaction.gateway_transaction_id,
            gateway_response=transaction.gateway_response,
            error_message=transaction.error_message,
            event_type=transaction.event_type,
            source=transaction.source,
            created_at=transaction.created_at,
        )
        self.session.add(db_txn)
        await self.session.flush()
        await self.session.refresh(db_txn)
        logger.info(
            "payment_transaction_appended",
            payment_id=db_txn.payment_id,
            transaction_id=db_txn.id,
            transaction_type=db_txn.transaction_type,
            status=db_txn.status,
        )
        return self._to_entity(db_txn)

    async def list_by_payment(self, payment_id: str) -> List[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransactionModel)
            .where(PaymentTransactionModel.payment_id == payment_id)
            .order_by(PaymentTransactionModel.id.asc())
        )
        return [self._to_entity(t) for t in result.scalars().all()]
