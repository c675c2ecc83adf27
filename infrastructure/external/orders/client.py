"""
订单服务客户端 - 实现 OrderPort

订单服务响应可能是统一信封 {"code", "data", ...} 或裸对象，两者都兼容。
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from application.ports.orders import OrderPort, OrderSnapshot
from core.config import settings
from core.logging_config import get_logger
from infrastructure.external.api_clients.base import BaseAPIClient, NotFoundError


logger = get_logger(__name__)


class OrderServiceClient(BaseAPIClient, OrderPort):
    """订单协作方 HTTP 客户端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        cfg = settings.orders
        super().__init__(
            base_url=base_url or cfg.base_url,
            timeout=timeout if timeout is not None else cfg.timeout,
            max_retries=max_retries if max_retries is not None else cfg.max_retries,
            auth_token=api_token if api_token is not None else cfg.api_token,
            transport=transport,
        )

    @staticmethod
    def _unwrap(payload: Any) -> dict:
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            return payload["data"]
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _to_snapshot(order_id: str, data: dict) -> OrderSnapshot:
        try:
            total = Decimal(str(data.get("total", data.get("total_amount"))))
        except (InvalidOperation, TypeError) as e:
            raise ValueError(f"order {order_id} has no valid total") from e
        customer = data.get("customer") or {}
        return OrderSnapshot(
            id=str(data.get("id") or data.get("_id") or order_id),
            user_id=str(data.get("user_id") or data.get("customer_id") or customer.get("id") or ""),
            total=total,
            currency=data.get("currency"),
            status=data.get("status") or "pending",
            payment_status=data.get("payment_status"),
            order_number=data.get("order_number"),
            customer=customer,
        )

    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        """获取订单；不存在返回 None"""
        try:
            response = await self.get(f"/orders/{order_id}")
        except NotFoundError:
            logger.info("order_not_found", order_id=order_id)
            return None
        return self._to_snapshot(order_id, self._unwrap(response.json()))

    async def update_status(
        self,
        order_id: str,
        *,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
    ) -> None:
        """更新订单状态字段（只发送非空字段）"""
        body = {k: v for k, v in {"status": status, "payment_status": payment_status}.items() if v is not None}
        if not body:
            return
        await self.patch(f"/orders/{order_id}/status", json_data=body)
        logger.info("order_status_updated", order_id=order_id, **body)
