"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details={"order_id": order_id},
        )


class PaymentNotFoundException(BusinessException):
    def __init__(self, payment_id: str):
        super().__init__(
            code=BusinessCode.PAYMENT_NOT_FOUND,
            message="Payment not found",
            error_type="PaymentNotFound",
            details={"payment_id": payment_id},
        )


class PaymentUnauthorizedException(BusinessException):
    """调用方不是订单/支付的所有者"""

    def __init__(self, message: str = "Caller does not own this resource", *, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.FORBIDDEN,
            message=message,
            error_type="Unauthorized",
            details=details,
        )


class AlreadyPaidException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=BusinessCode.PAYMENT_ALREADY_PAID,
            message="Order has already been paid",
            error_type="AlreadyPaid",
            details={"order_id": order_id},
        )


class PaymentInitiationFailedException(BusinessException):
    """网关下单失败；details 中只包含可公开的信息（不含密钥）"""

    def __init__(
        self,
        payment_id: str,
        message: str = "Payment could not be started, please try again",
        *,
        provider: Optional[str] = None,
        provider_code: Optional[str] = None,
        retryable: bool = False,
    ):
        details = {"payment_id": payment_id, "retryable": retryable}
        if provider:
            details["provider"] = provider
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(
            code=BusinessCode.PAYMENT_INITIATION_FAILED,
            message=message,
            error_type="PaymentInitiationFailed",
            details=details,
        )


class UnsupportedOperationException(BusinessException):
    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.UNSUPPORTED_OPERATION,
            message=message,
            error_type="UnsupportedOperation",
            details=details,
        )


class InvalidPaymentStateException(BusinessException):
    def __init__(self, payment_id: str, status: str, action: str):
        super().__init__(
            code=BusinessCode.CONFLICT,
            message=f"Cannot {action} a payment in status {status}",
            error_type="InvalidPaymentState",
            details={"payment_id": payment_id, "status": status},
        )


class PaymentSignatureError(BusinessException):
    """webhook 签名校验失败；details 中不包含签名或原始报文"""

    def __init__(self, provider: str, message: str = "Invalid webhook signature"):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details={"provider": provider},
        )
