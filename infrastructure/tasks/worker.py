"""Entry point for the payments Celery worker.

``celery -A infrastructure.tasks.config.celery worker -B`` works as well; this
script pins the queues the payment tasks are routed to.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(
        argv=[
            "worker",
            "--hostname=payments@%h",
            "--queues=high,default,low",
            "--loglevel=INFO",
        ]
    )


if __name__ == "__main__":
    main()
