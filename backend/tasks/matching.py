"""
Matching Tasks
Celery tasks for running the match-and-notify pipeline outside the stream
consumer, and for the weekly notification counter reset.
"""
import asyncio
import time
from typing import Any, Optional
from uuid import UUID

import structlog

from agents.matching.throttle import ThrottleGuard
from agents.orchestrator.coordinator import create_orchestrator
from backend.celery_app import celery_app
from backend.core.config import settings
from backend.core.events import FindMatchesRequestedEvent
from backend.core.exceptions import RunRetryable
from backend.database import create_session_factory
from backend.events import EventBus

logger = structlog.get_logger().bind(module="matching_tasks")


async def _run_find_matches(
    need_id: UUID,
    retrigger: bool,
    database_url: Optional[str] = None,
    event_bus: Optional[EventBus] = None,
) -> dict[str, Any]:
    engine, session_factory = create_session_factory(database_url or settings.async_database_url)
    owns_bus = event_bus is None
    bus = event_bus or EventBus()

    try:
        await bus.connect()
        orchestrator = create_orchestrator(session_factory, bus)
        try:
            outcome = await orchestrator.handle(
                FindMatchesRequestedEvent(need_id=need_id, retrigger=retrigger)
            )
        finally:
            await orchestrator.dispatcher.channel.close()

        if outcome is None:
            return {"need_id": str(need_id), "skipped": True}

        return {
            "need_id": str(need_id),
            "skipped": False,
            "matched": outcome.matched,
            "notified_member_ids": [str(m) for m in outcome.notified_member_ids],
            "candidate_count": outcome.candidate_count,
            "reason": outcome.reason.value if outcome.reason else None,
            "partial": outcome.partial,
            "retryable": outcome.retryable,
        }
    finally:
        if owns_bus:
            await bus.disconnect()
        await engine.dispose()


async def _run_reset(database_url: Optional[str] = None) -> int:
    engine, session_factory = create_session_factory(database_url or settings.async_database_url)
    try:
        return await ThrottleGuard(session_factory).reset_all_counts()
    finally:
        await engine.dispose()


# =============================================================================
# Task 1: Find Matches
# =============================================================================

@celery_app.task(
    bind=True,
    name="backend.tasks.matching.find_matches",
    queue="matching",
    priority=7,
    soft_time_limit=120,
    time_limit=180,
    max_retries=3,
    default_retry_delay=30,
    autoretry_for=(ConnectionError, OSError),
    retry_backoff=True,
)
def find_matches(self, need_id: str, retrigger: bool = False) -> dict[str, Any]:
    """
    Run one matching orchestration for a need.

    Duplicate calls for the same approval are skipped by the run claim, so
    the task is safe to retry. Pass retrigger=True to run a completed
    approval again; members already notified for the need are not
    notified twice.

    Args:
        need_id: UUID string of the approved need.
        retrigger: Reclaim a run that already completed.

    Returns:
        Dictionary with the run outcome, or {"skipped": True} when another
        run owns the approval.

    Raises:
        ValueError: If need_id is not a UUID.
        RunRetryable: Once retries are exhausted for a run that keeps
            ending retryable (member store unavailable).
    """
    start_time = time.time()
    task_id = self.request.id

    try:
        need_uuid = UUID(need_id)
    except (ValueError, AttributeError) as e:
        logger.error("invalid_need_id", task_id=task_id, need_id=need_id, error=str(e))
        raise ValueError(f"Invalid need_id format: {need_id}") from e

    logger.info("find_matches_started", task_id=task_id, need_id=need_id, retrigger=retrigger)

    try:
        result = asyncio.run(_run_find_matches(need_uuid, retrigger))
    except Exception as e:
        logger.error(
            "find_matches_failed",
            task_id=task_id,
            need_id=need_id,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        raise

    if result.get("retryable"):
        logger.warning(
            "find_matches_retryable",
            task_id=task_id,
            need_id=need_id,
            reason=result.get("reason"),
            retry_count=self.request.retries,
        )
        retry_delay = self.default_retry_delay * (2 ** self.request.retries)
        raise self.retry(
            exc=RunRetryable(need_uuid, result.get("reason")),
            countdown=int(retry_delay),
        )

    result["task_id"] = task_id
    result["processing_time_seconds"] = time.time() - start_time

    logger.info(
        "find_matches_completed",
        task_id=task_id,
        need_id=need_id,
        skipped=result["skipped"],
        notified=len(result.get("notified_member_ids", [])),
        duration_seconds=result["processing_time_seconds"],
    )
    return result


# =============================================================================
# Task 2: Weekly Counter Reset
# =============================================================================

@celery_app.task(
    bind=True,
    name="backend.tasks.matching.reset_weekly_notification_counts",
    queue="normal",
    soft_time_limit=60,
    time_limit=90,
    max_retries=3,
    autoretry_for=(ConnectionError, OSError),
    retry_backoff=True,
)
def reset_weekly_notification_counts(self) -> dict[str, Any]:
    """
    Zero every member's weekly notification counter.

    Scheduled by beat every Monday 00:00 UTC. Running it twice is harmless.
    """
    members_reset = asyncio.run(_run_reset())
    logger.info("weekly_reset_completed", task_id=self.request.id, members_reset=members_reset)
    return {"members_reset": members_reset}


__all__ = [
    "find_matches",
    "reset_weekly_notification_counts",
]
