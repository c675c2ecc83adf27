"""Common base task for payment jobs"""
from __future__ import annotations

from celery import Task
from core.logging_config import get_logger

logger = get_logger(__name__)


class BaseTask(Task):
    """Structured lifecycle logging shared by the sweep and notification tasks."""

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning(
            "payment_task_retry",
            task_id=task_id,
            task_name=self.name,
            kwargs=kwargs,
            retries=self.request.retries,
            error=str(exc),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        """Final failure: for notify_order the order service stays out of date until someone replays it."""
        logger.error(
            "payment_task_failure",
            task_id=task_id,
            task_name=self.name,
            kwargs=kwargs,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "payment_task_success",
            task_id=task_id,
            task_name=self.name,
            result=retval if isinstance(retval, dict) else None,
        )
        super().on_success(retval, task_id, args, kwargs)
