"""
Matching Run Store
Persistence for matching_runs rows: claim, phase updates and completion.

Claiming is an insert against the unique (need_id, approval_key) key, so
two workers handling duplicate triggers cannot both own a run.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.config import settings
from backend.models import MatchingRun, RunPhase, RunStatus

from .models import RunOutcome

logger = structlog.get_logger().bind(agent="run_store")


def outcome_to_json(outcome: RunOutcome) -> dict[str, Any]:
    return outcome.model_dump(mode="json")


class RunStore:
    """Matching run bookkeeping."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stale_after_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.stale_after = timedelta(
            seconds=(
                stale_after_seconds
                if stale_after_seconds is not None
                else settings.run_stale_after_seconds
            )
        )

    async def claim(
        self,
        need_id: UUID,
        approval_key: str,
        retrigger: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[UUID]:
        """
        Take ownership of the run for (need_id, approval_key).

        An existing row is reclaimed when it is retryable, when it has been
        running longer than the stale window, or when it completed and
        retrigger is set.

        Returns:
            The run id, or None if another run owns or already finished it.

        Raises:
            IntegrityError: If the insert failed for a reason other than an
                existing run row.
        """
        now = now or datetime.now(timezone.utc)

        run = MatchingRun(
            need_id=need_id,
            approval_key=approval_key,
            phase=RunPhase.REQUESTED,
            status=RunStatus.RUNNING,
            started_at=now,
        )

        try:
            async with self.session_factory() as session:
                session.add(run)
                await session.commit()
            logger.info("run_claimed", need_id=str(need_id), run_id=str(run.id))
            return run.id
        except IntegrityError as insert_error:
            conflict = insert_error

        reclaimable = [
            MatchingRun.status == RunStatus.RETRYABLE,
            and_(
                MatchingRun.status == RunStatus.RUNNING,
                MatchingRun.started_at < now - self.stale_after,
            ),
        ]
        if retrigger:
            reclaimable.append(MatchingRun.status == RunStatus.COMPLETED)

        async with self.session_factory() as session:
            result = await session.execute(
                update(MatchingRun)
                .where(
                    MatchingRun.need_id == need_id,
                    MatchingRun.approval_key == approval_key,
                    or_(*reclaimable),
                )
                .values(
                    status=RunStatus.RUNNING,
                    phase=RunPhase.REQUESTED,
                    attempt=MatchingRun.attempt + 1,
                    candidate_count=0,
                    notified_member_ids=[],
                    outcome=None,
                    started_at=now,
                    completed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            existing = (
                await session.execute(
                    select(MatchingRun.id, MatchingRun.status).where(
                        MatchingRun.need_id == need_id,
                        MatchingRun.approval_key == approval_key,
                    )
                )
            ).one_or_none()

        if existing is None:
            raise conflict

        if result.rowcount == 1:
            logger.info("run_reclaimed", need_id=str(need_id), run_id=str(existing.id))
            return existing.id

        logger.debug(
            "duplicate_trigger_ignored",
            need_id=str(need_id),
            approval_key=approval_key,
            status=existing.status.value,
        )
        return None

    async def update_phase(
        self,
        run_id: UUID,
        phase: RunPhase,
        candidate_count: Optional[int] = None,
    ) -> None:
        values: dict[str, Any] = {"phase": phase}
        if candidate_count is not None:
            values["candidate_count"] = candidate_count

        async with self.session_factory() as session:
            await session.execute(
                update(MatchingRun)
                .where(MatchingRun.id == run_id, MatchingRun.status == RunStatus.RUNNING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def complete(self, run_id: UUID, outcome: RunOutcome) -> None:
        """Record the terminal outcome; retryable outcomes leave the run reclaimable."""
        status = RunStatus.RETRYABLE if outcome.retryable else RunStatus.COMPLETED
        await self._finish(run_id, status, outcome)

    async def mark_retryable(self, run_id: UUID, outcome: Optional[RunOutcome] = None) -> None:
        await self._finish(run_id, RunStatus.RETRYABLE, outcome)

    async def _finish(
        self,
        run_id: UUID,
        status: RunStatus,
        outcome: Optional[RunOutcome],
    ) -> None:
        values: dict[str, Any] = {
            "status": status,
            "phase": RunPhase.COMPLETED,
            "completed_at": datetime.now(timezone.utc),
        }
        if outcome is not None:
            values["outcome"] = outcome_to_json(outcome)
            values["candidate_count"] = outcome.candidate_count
            values["notified_member_ids"] = [str(m) for m in outcome.notified_member_ids]

        async with self.session_factory() as session:
            await session.execute(
                update(MatchingRun)
                .where(MatchingRun.id == run_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info("run_finished", run_id=str(run_id), status=status.value)

    async def get(self, need_id: UUID, approval_key: str) -> Optional[MatchingRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(MatchingRun).where(
                    MatchingRun.need_id == need_id,
                    MatchingRun.approval_key == approval_key,
                )
            )
            return result.scalar_one_or_none()
