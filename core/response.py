"""
统一响应信封

成功：{"code": 0, "message": ..., "data": ...}
失败：{"code": <业务码>, "message": ..., "error": {"type", "details", "field", "request_id", "timestamp"}}
"""
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field, field_serializer

from shared.codes import BusinessCode


T = TypeVar("T")


def _utc_iso(ts: datetime) -> str:
    ts = ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)
    return ts.isoformat().replace("+00:00", "Z")


class ErrorDetail(BaseModel):
    type: str
    details: Optional[dict] = None
    field: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("timestamp")
    def _serialize_timestamp(self, timestamp: datetime) -> str:
        return _utc_iso(timestamp)


class Response(BaseModel, Generic[T]):
    code: int
    message: str
    data: Optional[T] = None
    error: Optional[ErrorDetail] = None


class PaginatedData(BaseModel, Generic[T]):
    """分页数据；pages 由 total/size 推导"""
    items: list[T]
    total: int
    page: int
    size: int
    pages: int

    @classmethod
    def of(cls, items: list, total: int, page: int, size: int) -> "PaginatedData":
        pages = -(-total // size) if size > 0 else 0
        return cls(items=items, total=total, page=page, size=size, pages=pages)


def success_response(data: Any = None, message: str = "Success") -> Response:
    return Response(code=BusinessCode.SUCCESS, message=message, data=data)


def error_response(
    code: int,
    message: str,
    error_type: str = "BusinessError",
    details: Optional[dict] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Response:
    """
    创建错误响应

    details 由异常自身提供，调用方负责保证其中不含网关凭据。
    """
    return Response(
        code=code,
        message=message,
        error=ErrorDetail(type=error_type, details=details, field=field, request_id=request_id),
    )


def paginated_response(items: list, total: int, page: int, size: int, message: str = "Success") -> Response[PaginatedData]:
    return Response(code=BusinessCode.SUCCESS, message=message, data=PaginatedData.of(items, total, page, size))
