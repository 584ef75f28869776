"""
Matching Orchestrator - Coordinator
Executes the commands of the matching state machine and feeds the
resulting facts back, one run per FindMatchesRequested trigger.

The deadline clock starts once the run is claimed. Retrieval, assessment
and dispatch are cut off when it passes; slot reservations and releases
are single statements that are checked against the deadline before they
start but never cancelled midway. When the deadline passes the run
completes with whatever it has notified so far.
"""

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agents.delivery.channels import ExpoPushChannel
from agents.delivery.dispatcher import NotificationDispatcher
from agents.matching.embedder import NeedEmbedder
from agents.matching.models import NeedData, ReservationOutcome
from agents.matching.relevance import RelevanceGate, build_relevance_gate
from agents.matching.retriever import CandidateRetriever, SqlMemberStore
from agents.matching.throttle import ThrottleGuard
from backend.core.config import Settings, settings
from backend.core.events import (
    FindMatchesRequestedEvent,
    MatchesFoundEvent,
    NoMatchesFoundEvent,
    NoMatchReason,
)
from backend.core.exceptions import (
    EmbeddingUnavailable,
    GateUnavailable,
    RetrievalUnavailable,
)
from backend.events import EventBus
from backend.models import Need, RunPhase

from .machine import decide, initial_state
from .models import (
    AssessCandidate,
    AssessmentFailed,
    CandidateAssessed,
    CandidatesRetrieved,
    ClaimRun,
    Command,
    CompleteRun,
    DeadlineExceeded,
    DispatchNotification,
    Fact,
    NotificationDispatched,
    ReleaseSlot,
    ReleaseUnsentSlot,
    Requested,
    ReserveSlot,
    RetrievalFailed,
    RetrieveCandidates,
    RunClaimed,
    RunCompleted,
    RunOutcome,
    RunRejected,
    RunState,
    SlotDenied,
    SlotReleased,
    SlotReserved,
)
from .runs import RunStore

logger = structlog.get_logger().bind(agent="orchestrator")


def build_terminal_event(outcome: RunOutcome) -> Union[MatchesFoundEvent, NoMatchesFoundEvent]:
    """MatchesFound when anyone was notified, NoMatchesFound otherwise."""
    if outcome.matched:
        return MatchesFoundEvent(
            need_id=outcome.need_id,
            notified_member_ids=list(outcome.notified_member_ids),
            notified_count=len(outcome.notified_member_ids),
            candidate_count=outcome.candidate_count,
            partial=outcome.partial,
        )
    return NoMatchesFoundEvent(
        need_id=outcome.need_id,
        reason=outcome.reason or NoMatchReason.NONE_NOTIFIED,
        candidate_count=outcome.candidate_count,
        retryable=outcome.retryable,
    )


class MatchingOrchestrator:
    """
    Match-and-notify pipeline for approved needs.

    Pipeline:
        claim -> retrieve -> assess (concurrent) -> reserve/dispatch
        (sequential, similarity order) -> publish terminal event
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retriever: CandidateRetriever,
        gate: RelevanceGate,
        throttle: ThrottleGuard,
        dispatcher: NotificationDispatcher,
        event_bus: EventBus,
        runs: Optional[RunStore] = None,
        embedder: Optional[NeedEmbedder] = None,
        deadline_seconds: Optional[float] = None,
        gate_concurrency: Optional[int] = None,
        notifications_per_need: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.retriever = retriever
        self.gate = gate
        self.throttle = throttle
        self.dispatcher = dispatcher
        self.event_bus = event_bus
        self.runs = runs or RunStore(session_factory)
        self.embedder = embedder
        self.deadline_seconds = (
            deadline_seconds if deadline_seconds is not None else settings.run_deadline_seconds
        )
        self.gate_concurrency = (
            gate_concurrency if gate_concurrency is not None else settings.gate_concurrency
        )
        self.budget = (
            notifications_per_need
            if notifications_per_need is not None
            else settings.notifications_per_need
        )

    # =========================================================================
    # Entry point
    # =========================================================================

    async def handle(self, event: FindMatchesRequestedEvent) -> Optional[RunOutcome]:
        """
        Run matching for one trigger.

        Returns:
            The run outcome, or None when the trigger was a duplicate.

        Raises:
            SQLAlchemyError: If the need cannot be loaded or the run cannot
                be claimed; the trigger should be redelivered.
        """
        log = logger.bind(need_id=str(event.need_id))

        need = await self._load_need(event)
        if need is None:
            log.warning("need_not_found")
            outcome = RunOutcome(need_id=event.need_id, reason=NoMatchReason.NEED_NOT_FOUND)
            await self._publish(outcome)
            return outcome

        approval_key = event.approval_key or need.approval_key
        requested = Requested(need=need, approval_key=approval_key, retrigger=event.retrigger)

        state = initial_state(requested, budget=self.budget)
        state = await self._run(state, requested)

        if state.outcome is None:
            log.info("run_skipped", approval_key=approval_key)
            return None

        log.info(
            "run_completed",
            matched=state.outcome.matched,
            notified=len(state.outcome.notified_member_ids),
            candidates=state.outcome.candidate_count,
            reason=state.outcome.reason.value if state.outcome.reason else None,
            partial=state.outcome.partial,
        )
        return state.outcome

    async def _load_need(self, event: FindMatchesRequestedEvent) -> Optional[NeedData]:
        async with self.session_factory() as session:
            record = await session.get(Need, event.need_id)
            if record is None:
                return None
            need = NeedData.from_record(record)

        if need.embedding is None and self.embedder is not None:
            try:
                need = await self.embedder.ensure_embedding(need)
            except EmbeddingUnavailable as e:
                logger.warning("need_embedding_unavailable", need_id=str(need.need_id), error=str(e))

        return need

    # =========================================================================
    # Machine loop
    # =========================================================================

    async def _run(self, state: RunState, first: Fact) -> RunState:
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + self.deadline_seconds

        state, commands = decide(state, first)
        queue: deque[Command] = deque(commands)

        while queue:
            batch = [queue.popleft()]
            command = batch[0]
            if isinstance(command, AssessCandidate):
                while queue and isinstance(queue[0], AssessCandidate):
                    batch.append(queue.popleft())

            if isinstance(command, CompleteRun):
                facts = [await self._complete(state, command)]
            elif isinstance(command, (ClaimRun, ReleaseSlot, ReleaseUnsentSlot)):
                facts = [await self._execute(command)]
            elif isinstance(command, ReserveSlot):
                if deadline_at - loop.time() <= 0:
                    facts = [DeadlineExceeded()]
                else:
                    facts = [await self._execute(command)]
            else:
                facts = await self._execute_bounded(batch, deadline_at - loop.time())

            previous_phase = state.phase
            for fact in facts:
                if isinstance(fact, RunClaimed):
                    deadline_at = loop.time() + self.deadline_seconds
                if isinstance(fact, DeadlineExceeded):
                    logger.warning(
                        "run_deadline_exceeded",
                        need_id=str(state.need.need_id),
                        phase=state.phase.value,
                        notified=len(state.notified),
                    )
                    queue.clear()
                state, commands = decide(state, fact)
                queue.extend(commands)

            if state.phase != previous_phase and not state.completing:
                await self._record_phase(state)

        return state

    async def _execute_bounded(self, batch: list[Command], remaining: float) -> list[Fact]:
        if remaining <= 0:
            return [DeadlineExceeded()]
        try:
            if len(batch) == 1:
                return [await asyncio.wait_for(self._execute(batch[0]), remaining)]
            return await asyncio.wait_for(self._assess_all(batch), remaining)
        except asyncio.TimeoutError:
            return [DeadlineExceeded()]

    async def _assess_all(self, batch: list[Command]) -> list[Fact]:
        """Assess candidates concurrently; facts come back in command order."""
        semaphore = asyncio.Semaphore(self.gate_concurrency)

        async def bounded(command: Command) -> Fact:
            async with semaphore:
                return await self._execute(command)

        return list(await asyncio.gather(*(bounded(c) for c in batch)))

    async def _record_phase(self, state: RunState) -> None:
        if state.run_id is None or state.phase == RunPhase.COMPLETED:
            return
        try:
            await self.runs.update_phase(
                state.run_id,
                state.phase,
                candidate_count=len(state.candidates),
            )
        except SQLAlchemyError as e:
            logger.warning("run_phase_update_failed", run_id=str(state.run_id), error=str(e))

    # =========================================================================
    # Command handlers
    # =========================================================================

    async def _execute(self, command: Command) -> Fact:
        if isinstance(command, ClaimRun):
            claimed_at = datetime.now(timezone.utc)
            run_id = await self.runs.claim(
                command.need_id,
                command.approval_key,
                retrigger=command.retrigger,
                now=claimed_at,
            )
            return RunClaimed(run_id=run_id, claimed_at=claimed_at) if run_id else RunRejected()

        if isinstance(command, RetrieveCandidates):
            try:
                candidates = await self.retriever.find_candidates(command.need)
            except RetrievalUnavailable as e:
                logger.error("retrieval_unavailable", need_id=str(command.need.need_id), error=str(e))
                return RetrievalFailed(error=str(e))
            return CandidatesRetrieved(candidates=tuple(candidates))

        if isinstance(command, AssessCandidate):
            member_id = command.candidate.member_id
            try:
                assessment = await self.gate.assess(command.need, command.candidate)
            except GateUnavailable as e:
                logger.warning(
                    "candidate_assessment_failed",
                    need_id=str(command.need.need_id),
                    member_id=str(member_id),
                    error=str(e),
                )
                return AssessmentFailed(member_id=member_id, error=str(e))
            return CandidateAssessed(member_id=member_id, assessment=assessment)

        if isinstance(command, ReserveSlot):
            outcome = await self.throttle.try_reserve(command.member_id)
            if outcome == ReservationOutcome.RESERVED:
                return SlotReserved(member_id=command.member_id)
            return SlotDenied(member_id=command.member_id)

        if isinstance(command, DispatchNotification):
            result = await self.dispatcher.dispatch(
                command.need,
                command.candidate,
                command.justification,
            )
            return NotificationDispatched(
                member_id=command.candidate.member_id,
                outcome=result.outcome,
                error=result.error_message,
            )

        if isinstance(command, ReleaseSlot):
            await self.throttle.release(command.member_id)
            return SlotReleased(member_id=command.member_id)

        if isinstance(command, ReleaseUnsentSlot):
            await self.throttle.release_unless_notified(
                command.member_id,
                command.need_id,
                since=command.since,
            )
            return SlotReleased(member_id=command.member_id)

        raise TypeError(f"Unhandled command: {type(command).__name__}")

    async def _complete(self, state: RunState, command: CompleteRun) -> Fact:
        """
        Publish the terminal event, then close the run row.

        If publishing fails the run is left retryable and the error
        propagates so the trigger is redelivered.
        """
        try:
            await self._publish(command.outcome)
        except Exception:
            await self.runs.mark_retryable(command.run_id, command.outcome)
            raise

        await self.runs.complete(command.run_id, command.outcome)
        return RunCompleted(run_id=command.run_id)

    async def _publish(self, outcome: RunOutcome) -> str:
        event = build_terminal_event(outcome)
        if isinstance(event, MatchesFoundEvent):
            return await self.event_bus.publish_matches_found(event)
        return await self.event_bus.publish_no_matches_found(event)


def create_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    event_bus: EventBus,
    config: Settings = settings,
) -> MatchingOrchestrator:
    """Wire the production pipeline from settings."""
    embedder = NeedEmbedder(session_factory) if config.openai_api_key else None

    return MatchingOrchestrator(
        session_factory=session_factory,
        retriever=CandidateRetriever(
            SqlMemberStore(session_factory),
            radius_km=config.match_radius_km,
            weekly_cap=config.weekly_notification_cap,
            top_k=config.candidate_top_k,
        ),
        gate=build_relevance_gate(config, session_factory),
        throttle=ThrottleGuard(session_factory, cap=config.weekly_notification_cap),
        dispatcher=NotificationDispatcher(session_factory, ExpoPushChannel()),
        event_bus=event_bus,
        runs=RunStore(session_factory, stale_after_seconds=config.run_stale_after_seconds),
        embedder=embedder,
        deadline_seconds=config.run_deadline_seconds,
        gate_concurrency=config.gate_concurrency,
        notifications_per_need=config.notifications_per_need,
    )
