"""
Matching Celery Tasks

Task Modules:
    - matching: manual matching runs and the weekly counter reset

Queues:
    - matching: find_matches
    - normal: reset_weekly_notification_counts (Celery beat, Mondays 00:00 UTC)

Usage:
    from backend.tasks import matching

    matching.find_matches.delay(need_id="4b9f...", retrigger=False)
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from backend.tasks import matching

__all__ = [
    "matching",
]
