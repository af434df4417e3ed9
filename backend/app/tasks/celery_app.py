# backend/app/tasks/celery_app.py
"""
Celery application for the booking sweeps.

Redis is both broker and result backend. Beat drives the three sweeps on the
``sweeps`` queue; every sweep is idempotent, so a redelivered or overlapping
tick only finds less work.
"""

import logging
import os
from typing import Any, Dict, Type, cast

from celery import Celery, Task
from celery.signals import setup_logging

from app.core.config import settings
from app.tasks.beat_schedule import get_beat_schedule

logger = logging.getLogger(__name__)

SWEEP_QUEUE = "sweeps"

CELERY_CONFIG: Dict[str, Any] = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "result_expires": 3600,
    "worker_prefetch_multiplier": 1,
    "worker_max_tasks_per_child": 1000,
    "worker_hijack_root_logger": False,
    # A sweep batch is bounded; anything running this long is stuck
    "task_soft_time_limit": 300,
    "task_time_limit": 600,
    "task_acks_late": True,
    "task_reject_on_worker_lost": True,
    "broker_transport_options": {"visibility_timeout": 3600},
}


def _broker_url() -> str:
    url = os.getenv("CELERY_BROKER_URL") or settings.redis_url
    # Redis URLs without a database number land on db 0 explicitly
    if url.startswith("redis") and url.rstrip("/").count("/") < 3:
        url = f"{url.rstrip('/')}/0"
    return url


def create_celery_app() -> Celery:
    broker_url = _broker_url()
    app = Celery(
        "kitchenhub",
        broker=broker_url,
        backend=os.getenv("CELERY_RESULT_BACKEND") or broker_url,
    )
    app.conf.update(CELERY_CONFIG)
    app.conf.imports = ("app.tasks.booking_sweeps",)
    app.conf.task_routes = {"app.tasks.booking_sweeps.*": {"queue": SWEEP_QUEUE}}
    app.conf.beat_schedule = get_beat_schedule(settings.sweep_interval_minutes)
    return app


@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Keep Celery from installing its own root handlers."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class BaseTask(Task):  # type: ignore[misc]
    """Logs every sweep outcome with its task id."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger.error(
            "Task %s[%s] failed: %s",
            self.name,
            task_id,
            exc,
            exc_info=True,
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval: Any, task_id: str, args: Any, kwargs: Any) -> None:
        logger.info(
            "Task %s[%s] finished",
            self.name,
            task_id,
            extra={"task_id": task_id, "task_name": self.name, "result": retval},
        )
        super().on_success(retval, task_id, args, kwargs)


celery_app = create_celery_app()
celery_app.Task = cast(Type[Task], BaseTask)
