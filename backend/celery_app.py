"""
Matching Celery Application Configuration

This module configures the Celery task queue used for manual matching
triggers and the weekly notification counter reset.
"""

import logging
import time
from typing import Any

from celery import Celery, Task
from celery.schedules import crontab
from celery.signals import (
    task_failure,
    task_postrun,
    task_prerun,
    worker_process_init,
)
from kombu import Exchange, Queue

from backend.core.config import settings
from backend.core.logging import configure_logging
from backend.core.sentry import init_sentry

logger = logging.getLogger(__name__)


# =============================================================================
# Queue Definitions
# =============================================================================

default_exchange = Exchange("default", type="direct")
priority_exchange = Exchange("priority", type="direct")

TASK_QUEUES = (
    # Matching runs triggered outside the stream consumer
    Queue(
        "matching",
        exchange=priority_exchange,
        routing_key="matching",
        queue_arguments={"x-max-priority": 7},
    ),
    # Maintenance: counter resets
    Queue(
        "normal",
        exchange=default_exchange,
        routing_key="normal",
        queue_arguments={"x-max-priority": 3},
    ),
)

TASK_ROUTES = {
    "backend.tasks.matching.find_matches": {"queue": "matching"},
    "backend.tasks.matching.reset_weekly_notification_counts": {"queue": "normal"},
}


# =============================================================================
# Celery Application
# =============================================================================

def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Configured Celery application instance.
    """
    app = Celery(
        "mndigitalaid_matching",
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend,
        include=["backend.tasks.matching"],
    )

    app.conf.update(
        # =============
        # Serialization
        # =============
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",

        # =======
        # Queues
        # =======
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="normal",
        task_default_exchange="default",
        task_default_routing_key="normal",

        # ===========
        # Time Limits
        # ===========
        task_soft_time_limit=300,
        task_time_limit=360,

        # =============
        # Retry Policy
        # =============
        task_default_retry_delay=10,
        task_max_retries=3,

        # ==========
        # Concurrency
        # ==========
        worker_concurrency=2,
        worker_prefetch_multiplier=1,

        # ===========
        # Result Backend
        # ===========
        result_expires=86400,

        # ==========
        # Task Track
        # ==========
        task_track_started=True,
        task_acks_late=True,
        task_reject_on_worker_lost=True,

        # ========
        # Timezone
        # ========
        timezone="UTC",
        enable_utc=True,

        # ===========
        # Broker Settings
        # ===========
        broker_connection_retry_on_startup=True,

        # ==========
        # Beat Schedule
        # ==========
        beat_schedule={
            "weekly-notification-count-reset": {
                "task": "backend.tasks.matching.reset_weekly_notification_counts",
                "schedule": crontab(minute=0, hour=0, day_of_week="monday"),
                "options": {"queue": "normal"},
            },
        },
    )

    return app


celery_app = create_celery_app()


# =============================================================================
# Monitoring Hooks
# =============================================================================

_task_start_times: dict[str, float] = {}


@worker_process_init.connect
def worker_process_init_handler(**kwargs: Any) -> None:
    """Set up logging and error tracking in each worker process."""
    configure_logging(json_logs=settings.json_logs)
    init_sentry("celery")


@task_prerun.connect
def task_prerun_handler(
    sender: Task | None = None,
    task_id: str | None = None,
    **extra: Any,
) -> None:
    if task_id:
        _task_start_times[task_id] = time.time()


@task_postrun.connect
def task_postrun_handler(
    sender: Task | None = None,
    task_id: str | None = None,
    state: str | None = None,
    **extra: Any,
) -> None:
    """Log task latency."""
    if task_id and task_id in _task_start_times:
        latency = time.time() - _task_start_times.pop(task_id)
        logger.info(
            f"Task {sender.name if sender else 'unknown'}[{task_id}] "
            f"completed in {latency:.3f}s with state={state}"
        )


@task_failure.connect
def task_failure_handler(
    sender: Task | None = None,
    task_id: str | None = None,
    exception: Exception | None = None,
    **kwargs: Any,
) -> None:
    logger.error(
        f"Task {sender.name if sender else 'unknown'}[{task_id}] failed: {exception}"
    )
    if task_id:
        _task_start_times.pop(task_id, None)


__all__ = [
    "celery_app",
    "create_celery_app",
    "TASK_QUEUES",
    "TASK_ROUTES",
]
