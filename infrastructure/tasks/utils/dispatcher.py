"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Optional

from core.logging_config import get_logger
from ..config.celery import celery_app

logger = get_logger(__name__)


class TaskDispatcher:
    """Internal facade used by the composition root to schedule tasks."""

    def enqueue_order_notification(
        self,
        order_id: str,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
    ) -> None:
        """Hand a failed order-status update to the retrying worker."""
        try:
            celery_app.send_task(
                "payments.notify_order",
                kwargs={"order_id": order_id, "status": status, "payment_status": payment_status},
            )
        except Exception as exc:
            # payment transition is already committed
            logger.error("order_notification_enqueue_failed", order_id=order_id, error=str(exc))

