"""
Throttle Guard
Atomic per-member weekly notification cap.

The counter lives on the member row and every change is a single
conditional UPDATE, so concurrent runs can never push a member past the cap.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import settings
from backend.models import Member, Notification

from .models import ReservationOutcome

logger = structlog.get_logger().bind(agent="throttle")


class ThrottleGuard:
    """Weekly cap enforcement for member notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cap: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.cap = cap if cap is not None else settings.weekly_notification_cap

    async def try_reserve(self, member_id: UUID) -> ReservationOutcome:
        """
        Take one of the member's weekly slots.

        A storage failure counts as CAP_REACHED: when in doubt, don't notify.
        """
        stmt = (
            update(Member)
            .where(
                Member.id == member_id,
                Member.notification_count_this_week < self.cap,
            )
            .values(notification_count_this_week=Member.notification_count_this_week + 1)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error("slot_reservation_failed", member_id=str(member_id), error=str(e))
            return ReservationOutcome.CAP_REACHED

        if result.rowcount == 1:
            logger.debug("slot_reserved", member_id=str(member_id))
            return ReservationOutcome.RESERVED

        logger.debug("slot_denied", member_id=str(member_id), cap=self.cap)
        return ReservationOutcome.CAP_REACHED

    async def release(self, member_id: UUID) -> bool:
        """
        Give back a slot that did not turn into a new notification.

        Returns:
            True if a slot was returned. Failures are logged; the counter
            then stays high, which only errs toward fewer notifications.
        """
        stmt = (
            update(Member)
            .where(
                Member.id == member_id,
                Member.notification_count_this_week > 0,
            )
            .values(notification_count_this_week=Member.notification_count_this_week - 1)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error("slot_release_failed", member_id=str(member_id), error=str(e))
            return False

        released = result.rowcount == 1
        logger.debug("slot_released", member_id=str(member_id), released=released)
        return released

    async def release_unless_notified(
        self,
        member_id: UUID,
        need_id: UUID,
        since: Optional[datetime] = None,
    ) -> bool:
        """
        Release a slot whose dispatch never reported back.

        The decrement and the check for a Notification row about `need_id`
        (sent at or after `since`) are one statement, so a row recorded by
        the interrupted dispatch keeps its slot.
        """
        recorded = select(Notification.id).where(
            Notification.need_id == need_id,
            Notification.member_id == member_id,
        )
        if since is not None:
            recorded = recorded.where(Notification.sent_at >= since)

        stmt = (
            update(Member)
            .where(
                Member.id == member_id,
                Member.notification_count_this_week > 0,
                ~recorded.exists(),
            )
            .values(notification_count_this_week=Member.notification_count_this_week - 1)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "slot_release_failed",
                member_id=str(member_id),
                need_id=str(need_id),
                error=str(e),
            )
            return False

        released = result.rowcount == 1
        logger.info(
            "unsent_slot_checked",
            member_id=str(member_id),
            need_id=str(need_id),
            released=released,
        )
        return released

    async def reset_all_counts(self) -> int:
        """
        Zero every member's weekly counter. Idempotent.

        Returns:
            Number of member rows touched.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(Member)
                .values(notification_count_this_week=0)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info("weekly_counts_reset", members=result.rowcount)
        return result.rowcount
