"""
业务码 -> HTTP 状态映射与全局异常处理器

所有错误都以统一信封返回；网关密钥、签名与原始回调内容不会出现在 details 中。
"""
import traceback
import uuid
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status as http_status

from .response import Response, error_response
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


logger = get_logger(__name__)


class UnauthorizedException(BusinessException):
    """访问令牌缺失或无效"""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(code=BusinessCode.UNAUTHORIZED, message=message, error_type="Unauthorized")


class TokenExpiredException(BusinessException):
    """访问令牌过期"""

    def __init__(self):
        super().__init__(code=BusinessCode.TOKEN_EXPIRED, message="Token expired", error_type="TokenExpired")


_CODE_TO_HTTP_STATUS = {
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,

    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.CONFLICT: http_status.HTTP_409_CONFLICT,
    BusinessCode.ORDER_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.PAYMENT_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.PAYMENT_ALREADY_PAID: http_status.HTTP_409_CONFLICT,
    BusinessCode.PAYMENT_INITIATION_FAILED: http_status.HTTP_502_BAD_GATEWAY,
    BusinessCode.UNSUPPORTED_OPERATION: http_status.HTTP_409_CONFLICT,

    BusinessCode.PERMISSION_ERROR: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.FORBIDDEN: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.UNAUTHORIZED: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.TOKEN_INVALID: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.TOKEN_EXPIRED: http_status.HTTP_401_UNAUTHORIZED,

    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.DATABASE_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.NETWORK_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,

    PaymentCode.PROVIDER_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.PROVIDER_RECOVERABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.TIMEOUT: http_status.HTTP_504_GATEWAY_TIMEOUT,
    # 网关收到 4xx 会按自身策略重投
    PaymentCode.SIGNATURE_ERROR: http_status.HTTP_400_BAD_REQUEST,
    PaymentCode.MALFORMED_WEBHOOK: http_status.HTTP_400_BAD_REQUEST,
}

_HTTP_STATUS_TO_CODE = {
    401: BusinessCode.UNAUTHORIZED,
    403: BusinessCode.FORBIDDEN,
    404: BusinessCode.NOT_FOUND,
    405: BusinessCode.PARAM_ERROR,
    503: BusinessCode.SERVICE_UNAVAILABLE,
}


def business_code_to_http_status(code: int) -> int:
    """业务码对应的 HTTP 状态，未登记的业务码按 400 处理"""
    return _CODE_TO_HTTP_STATUS.get(int(code), http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or uuid.uuid4().hex


def _json(status_code: int, body: Response, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


def register_exception_handlers(app: FastAPI):
    """注册全局异常处理器"""

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        status_code = business_code_to_http_status(exc.code)
        if status_code >= 500 or exc.code == PaymentCode.SIGNATURE_ERROR:
            logger.warning(
                "business_exception",
                code=int(exc.code),
                error_type=exc.error_type,
                message=exc.message,
                status_code=status_code,
            )
        body = error_response(
            code=exc.code,
            message=exc.message,
            error_type=exc.error_type,
            details=exc.details,
            field=exc.field,
            request_id=_request_id(request),
        )
        headers = {"WWW-Authenticate": "Bearer"} if status_code == http_status.HTTP_401_UNAUTHORIZED else None
        return _json(status_code, body, headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        body = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": jsonable_encoder(errors)},
            field=".".join(str(loc) for loc in first.get("loc", [])[1:]),
            request_id=_request_id(request),
        )
        return _json(http_status.HTTP_422_UNPROCESSABLE_ENTITY, body)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        body = error_response(
            code=_HTTP_STATUS_TO_CODE.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return _json(exc.status_code, body, getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.error("unhandled_exception", request_id=request_id, error_type=type(exc).__name__, exc_info=True)
        # 仅调试模式返回堆栈
        details = {"exception": str(exc), "traceback": traceback.format_exc()} if app.debug else None
        body = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )
        return _json(http_status.HTTP_500_INTERNAL_SERVER_ERROR, body)
