"""
API依赖项 - 认证、授权与应用服务装配（组合根）
"""
from typing import AsyncIterator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from application.ports.identity import CallerIdentity, IdentityPort
from application.ports.orders import OrderPort
from application.services.payment_service import PaymentApplicationService
from application.services.reconciliation_service import ReconciliationService
from application.services.webhook_service import WebhookIngestionService
from infrastructure.external.identity import JWTIdentityProvider
from infrastructure.external.orders import OrderServiceClient
from infrastructure.external.payments import get_payment_gateway
from infrastructure.tasks import TaskDispatcher
from infrastructure.unit_of_work import sqlalchemy_uow_factory

# HTTP Bearer for direct API calls; tokens are issued by the auth service
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token authentication",
    auto_error=False,
)


async def get_token(
    bearer_token: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> str:
    """从Bearer token中提取token"""
    if bearer_token and bearer_token.credentials:
        return bearer_token.credentials

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="未提供认证凭据",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_identity() -> IdentityPort:
    return JWTIdentityProvider()


async def get_current_caller(
    token: str = Depends(get_token),
    identity: IdentityPort = Depends(get_identity),
) -> CallerIdentity:
    """获取当前调用方身份"""
    return identity.resolve(token)


async def get_current_superuser(
    caller: CallerIdentity = Depends(get_current_caller),
) -> CallerIdentity:
    """获取当前超级管理员"""
    if not caller.is_superuser:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="需要超级管理员权限"
        )
    return caller


async def get_order_port() -> AsyncIterator[OrderPort]:
    client = OrderServiceClient()
    try:
        yield client
    finally:
        await client.close()


def get_reconciler(orders: OrderPort = Depends(get_order_port)) -> ReconciliationService:
    return ReconciliationService(
        sqlalchemy_uow_factory(),
        orders,
        on_notify_failure=TaskDispatcher().enqueue_order_notification,
    )


def get_payment_service(
    orders: OrderPort = Depends(get_order_port),
    identity: IdentityPort = Depends(get_identity),
    reconciler: ReconciliationService = Depends(get_reconciler),
) -> PaymentApplicationService:
    return PaymentApplicationService(
        uow_factory=sqlalchemy_uow_factory(),
        orders=orders,
        identity=identity,
        gateway_factory=get_payment_gateway,
        reconciler=reconciler,
    )


def get_webhook_service(
    reconciler: ReconciliationService = Depends(get_reconciler),
) -> WebhookIngestionService:
    return WebhookIngestionService(get_payment_gateway, reconciler)
