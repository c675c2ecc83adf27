"""Celery beat schedule for payment compensation jobs."""
from __future__ import annotations

from core.settings import payment_settings

CELERY_BEAT_SCHEDULE = {
    "payments-sweep-stale": {
        "task": "payments.sweep_stale_payments",
        "schedule": payment_settings.sweep_interval_seconds,
        "kwargs": {"limit": payment_settings.sweep_batch_size},
    },
}
