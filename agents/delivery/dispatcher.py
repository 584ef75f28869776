"""
Notification Dispatcher
Idempotent push dispatch for (need, member) pairs.

The notifications table's unique (need_id, member_id) constraint is the
source of truth for "already notified". The row is inserted before the
push goes out, so only the run that wins the insert sends; a provider
failure deletes it again. A crash between the insert and the provider
call leaves a row for a push that never went out. That gap is accepted:
the member is not notified about that need, never notified twice.
"""
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, MultipleResultsFound, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agents.delivery.channels import BaseChannel
from agents.delivery.models import (
    PUSH_TITLE,
    DispatchOutcome,
    DispatchResult,
    PushMessage,
)
from agents.matching.models import MatchCandidate, NeedData
from backend.core.exceptions import PushDeliveryError
from backend.models import Notification

logger = structlog.get_logger().bind(agent="dispatcher")


def build_push_message(need: NeedData, push_token: str, justification: str) -> PushMessage:
    return PushMessage(
        to=push_token,
        title=PUSH_TITLE,
        body=f"{need.organization_name} - {need.title}",
        data={
            "need_id": str(need.need_id),
            "organization": need.organization_name,
            "why_relevant": justification,
        },
    )


class NotificationDispatcher:
    """Sends one push per (need, member) and records it."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel: BaseChannel,
    ):
        self.session_factory = session_factory
        self.channel = channel

    async def _existing_notification(self, need_id: UUID, member_id: UUID) -> Optional[UUID]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Notification.id).where(
                    Notification.need_id == need_id,
                    Notification.member_id == member_id,
                )
            )
            # More than one row means the unique constraint is gone; let it raise
            return result.scalar_one_or_none()

    async def dispatch(
        self,
        need: NeedData,
        candidate: MatchCandidate,
        justification: str,
    ) -> DispatchResult:
        """
        Notify a member about a need unless they already were.

        Returns:
            DispatchResult with outcome SENT, ALREADY_SENT or FAILED.

        Raises:
            MultipleResultsFound: If storage holds duplicate rows for the pair.
        """
        need_id = need.need_id
        member_id = candidate.member_id
        log = logger.bind(need_id=str(need_id), member_id=str(member_id))

        try:
            existing = await self._existing_notification(need_id, member_id)
        except MultipleResultsFound:
            log.error("duplicate_notification_rows")
            raise
        except SQLAlchemyError as e:
            log.warning("notification_lookup_failed", error=str(e))
            return DispatchResult(
                outcome=DispatchOutcome.FAILED,
                need_id=need_id,
                member_id=member_id,
                error_message=f"lookup failed: {e}",
            )

        if existing is not None:
            log.debug("notification_already_sent")
            return DispatchResult(
                outcome=DispatchOutcome.ALREADY_SENT,
                need_id=need_id,
                member_id=member_id,
                notification_id=existing,
            )

        notification = Notification(
            need_id=need_id,
            member_id=member_id,
            why_relevant=justification,
        )

        try:
            async with self.session_factory() as session:
                session.add(notification)
                await session.commit()
        except IntegrityError:
            log.debug("notification_recorded_concurrently")
            return DispatchResult(
                outcome=DispatchOutcome.ALREADY_SENT,
                need_id=need_id,
                member_id=member_id,
            )
        except SQLAlchemyError as e:
            log.warning("notification_record_failed", error=str(e))
            return DispatchResult(
                outcome=DispatchOutcome.FAILED,
                need_id=need_id,
                member_id=member_id,
                error_message=f"record failed: {e}",
            )

        message = build_push_message(need, candidate.push_token, justification)

        try:
            receipt = await self.channel.send(message)
        except PushDeliveryError as e:
            log.warning("notification_failed", error=str(e), provider_error=e.provider_error)
            await self._forget(notification.id)
            return DispatchResult(
                outcome=DispatchOutcome.FAILED,
                need_id=need_id,
                member_id=member_id,
                error_message=str(e),
            )

        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(Notification)
                    .where(Notification.id == notification.id)
                    .values(
                        provider_message_id=receipt.provider_message_id,
                        sent_at=receipt.accepted_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            # The push went out and the row exists; only the ticket is missing
            log.error("notification_receipt_not_recorded", error=str(e))

        log.info("notification_sent", provider_message_id=receipt.provider_message_id)

        return DispatchResult(
            outcome=DispatchOutcome.SENT,
            need_id=need_id,
            member_id=member_id,
            notification_id=notification.id,
            provider_message_id=receipt.provider_message_id,
        )

    async def _forget(self, notification_id: UUID) -> None:
        """Drop the row of a push the provider refused."""
        try:
            async with self.session_factory() as session:
                await session.execute(
                    delete(Notification).where(Notification.id == notification_id)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "notification_unrecord_failed",
                notification_id=str(notification_id),
                error=str(e),
            )

    async def _mark(self, need_id: UUID, member_id: UUID, **values: bool) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Notification)
                .where(
                    Notification.need_id == need_id,
                    Notification.member_id == member_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    async def mark_clicked(self, need_id: UUID, member_id: UUID) -> bool:
        """Record that the member opened the notification."""
        updated = await self._mark(need_id, member_id, clicked=True)
        logger.info("notification_clicked", need_id=str(need_id), member_id=str(member_id), found=updated)
        return updated

    async def mark_responded(self, need_id: UUID, member_id: UUID) -> bool:
        """Record that the member responded to the need."""
        updated = await self._mark(need_id, member_id, responded=True)
        logger.info(
            "notification_responded",
            need_id=str(need_id),
            member_id=str(member_id),
            found=updated,
        )
        return updated
