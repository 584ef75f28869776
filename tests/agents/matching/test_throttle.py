"""
Tests for the weekly notification throttle.
"""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from agents.matching.models import ReservationOutcome
from agents.matching.throttle import ThrottleGuard
from backend.models import Member, Notification
from tests.fixtures.factories import create_member, create_need


async def weekly_count(session_factory, member_id) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(Member.notification_count_this_week).where(Member.id == member_id)
        )
        return result.scalar_one()


class TestThrottleGuard:
    """Tests for ThrottleGuard."""

    @pytest.mark.asyncio
    async def test_reserves_until_cap(self, session_factory):
        member = await create_member(session_factory)
        guard = ThrottleGuard(session_factory, cap=3)

        outcomes = [await guard.try_reserve(member.id) for _ in range(4)]

        assert outcomes == [ReservationOutcome.RESERVED] * 3 + [ReservationOutcome.CAP_REACHED]
        assert await weekly_count(session_factory, member.id) == 3

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_exceed_cap(self, session_factory):
        member = await create_member(session_factory)
        guard = ThrottleGuard(session_factory, cap=3)

        outcomes = await asyncio.gather(*(guard.try_reserve(member.id) for _ in range(10)))

        assert outcomes.count(ReservationOutcome.RESERVED) == 3
        assert await weekly_count(session_factory, member.id) == 3

    @pytest.mark.asyncio
    async def test_unknown_member_is_denied(self, session_factory):
        guard = ThrottleGuard(session_factory, cap=3)
        assert await guard.try_reserve(uuid.uuid4()) == ReservationOutcome.CAP_REACHED

    @pytest.mark.asyncio
    async def test_storage_failure_is_denied(self):
        def broken_factory():
            raise OperationalError("UPDATE", {}, Exception("connection refused"))

        guard = ThrottleGuard(broken_factory, cap=3)

        assert await guard.try_reserve(uuid.uuid4()) == ReservationOutcome.CAP_REACHED
        assert await guard.release(uuid.uuid4()) is False

    @pytest.mark.asyncio
    async def test_release_returns_slot(self, session_factory):
        member = await create_member(session_factory, notification_count_this_week=3)
        guard = ThrottleGuard(session_factory, cap=3)

        assert await guard.release(member.id) is True
        assert await guard.try_reserve(member.id) == ReservationOutcome.RESERVED
        assert await weekly_count(session_factory, member.id) == 3

    @pytest.mark.asyncio
    async def test_release_never_goes_negative(self, session_factory):
        member = await create_member(session_factory)
        guard = ThrottleGuard(session_factory, cap=3)

        assert await guard.release(member.id) is False
        assert await weekly_count(session_factory, member.id) == 0

    @pytest.mark.asyncio
    async def test_reset_all_counts(self, session_factory):
        first = await create_member(session_factory, notification_count_this_week=3)
        second = await create_member(session_factory, notification_count_this_week=1)
        guard = ThrottleGuard(session_factory, cap=3)

        assert await guard.reset_all_counts() == 2
        assert await weekly_count(session_factory, first.id) == 0
        assert await weekly_count(session_factory, second.id) == 0

        # Idempotent
        await guard.reset_all_counts()
        assert await weekly_count(session_factory, first.id) == 0


async def record_notification(session_factory, need_id, member_id, sent_at) -> None:
    async with session_factory() as session:
        session.add(
            Notification(
                need_id=need_id,
                member_id=member_id,
                why_relevant="Strong match",
                sent_at=sent_at,
            )
        )
        await session.commit()


class TestReleaseUnlessNotified:
    """Releasing a slot whose dispatch was interrupted."""

    @pytest.mark.asyncio
    async def test_releases_when_nothing_recorded(self, session_factory):
        need = await create_need(session_factory)
        member = await create_member(session_factory, notification_count_this_week=1)
        guard = ThrottleGuard(session_factory, cap=3)

        released = await guard.release_unless_notified(
            member.id, need.id, since=datetime.now(timezone.utc)
        )

        assert released is True
        assert await weekly_count(session_factory, member.id) == 0

    @pytest.mark.asyncio
    async def test_keeps_slot_for_row_recorded_by_the_run(self, session_factory):
        need = await create_need(session_factory)
        member = await create_member(session_factory, notification_count_this_week=1)
        guard = ThrottleGuard(session_factory, cap=3)
        claimed_at = datetime.now(timezone.utc)
        await record_notification(
            session_factory, need.id, member.id, claimed_at + timedelta(seconds=1)
        )

        released = await guard.release_unless_notified(member.id, need.id, since=claimed_at)

        assert released is False
        assert await weekly_count(session_factory, member.id) == 1

    @pytest.mark.asyncio
    async def test_releases_when_row_predates_the_run(self, session_factory):
        need = await create_need(session_factory)
        member = await create_member(session_factory, notification_count_this_week=2)
        guard = ThrottleGuard(session_factory, cap=3)
        claimed_at = datetime.now(timezone.utc)
        await record_notification(
            session_factory, need.id, member.id, claimed_at - timedelta(days=1)
        )

        released = await guard.release_unless_notified(member.id, need.id, since=claimed_at)

        assert released is True
        assert await weekly_count(session_factory, member.id) == 1

    @pytest.mark.asyncio
    async def test_row_for_other_need_does_not_block(self, session_factory):
        need = await create_need(session_factory)
        other = await create_need(session_factory)
        member = await create_member(session_factory, notification_count_this_week=2)
        guard = ThrottleGuard(session_factory, cap=3)
        await record_notification(session_factory, other.id, member.id, datetime.now(timezone.utc))

        assert await guard.release_unless_notified(member.id, need.id) is True
        assert await weekly_count(session_factory, member.id) == 1
