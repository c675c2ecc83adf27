"""
身份协作方 - 校验认证服务签发的访问令牌

令牌由外部认证服务签发（HS256，共享 SECRET_KEY），这里只做校验与归属判断。
"""
from typing import Optional

import jwt

from application.ports.identity import CallerIdentity, IdentityPort
from application.ports.orders import OrderSnapshot
from core.config import settings
from core.exceptions import UnauthorizedException, TokenExpiredException
from core.logging_config import get_logger


logger = get_logger(__name__)


class JWTIdentityProvider(IdentityPort):
    """基于 PyJWT 的身份解析"""

    def __init__(self, secret_key: Optional[str] = None, algorithm: Optional[str] = None):
        self._secret_key = secret_key or settings.SECRET_KEY
        self._algorithm = algorithm or settings.ALGORITHM

    def resolve(self, token: str) -> CallerIdentity:
        """解析访问令牌，返回调用方身份"""
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            raise TokenExpiredException()
        except jwt.InvalidTokenError as e:
            logger.warning("invalid_access_token", error=str(e))
            raise UnauthorizedException("无效的认证凭据")

        if payload.get("type", "access") != "access":
            raise UnauthorizedException("令牌类型错误")

        user_id = payload.get("sub")
        if user_id is None:
            raise UnauthorizedException("令牌缺少 sub")

        return CallerIdentity(
            user_id=str(user_id),
            is_superuser=bool(payload.get("is_superuser", False)),
        )

    def owns_order(self, caller: CallerIdentity, order: OrderSnapshot) -> bool:
        """订单归属：本人或超级管理员"""
        if caller.is_superuser:
            return True
        return str(order.user_id) == caller.user_id
