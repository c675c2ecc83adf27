"""
Request ID 中间件

透传或生成追踪 ID，并把 request_id / client_ip 绑定到 structlog 上下文，
同一请求内的支付日志、订单服务调用都能按 request_id 串起来。
"""
import re
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)

# 上游传入的 ID 只接受安全字符，避免日志注入
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIDMiddleware(BaseHTTPMiddleware):
    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(self.HEADER_NAME) or ""
        request_id = incoming if _VALID_REQUEST_ID.match(incoming) else uuid.uuid4().hex
        client_ip = self._client_ip(request)

        request.state.request_id = request_id
        request.state.client_ip = client_ip
        request_id_var.set(request_id)
        client_ip_var.set(client_ip)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, client_ip=client_ip)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response

    @staticmethod
    def _client_ip(request: Request) -> Optional[str]:
        """代理场景下取 X-Forwarded-For 第一跳，其次 X-Real-IP"""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip() or None
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
        return request.client.host if request.client else None


def get_request_id() -> Optional[str]:
    """当前请求的 request_id；请求上下文之外为 None"""
    return request_id_var.get()


def get_client_ip() -> Optional[str]:
    """当前请求的客户端 IP，支付记录的 ip_address 取自这里"""
    return client_ip_var.get()
