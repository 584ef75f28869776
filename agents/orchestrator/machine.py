"""
Matching State Machine
Pure transition function for one matching run.

    decide(state, fact) -> (state, commands)

No I/O, no clocks, no randomness: replaying the same facts against the
same initial state yields the same states and commands. Facts that do not
fit the current phase are ignored.

Phases: requested -> retrieving -> gating -> notifying -> completed
"""
from typing import Optional

from agents.delivery.models import DispatchOutcome
from backend.core.events import NoMatchReason
from backend.models import RunPhase

from .models import (
    AssessCandidate,
    AssessmentFailed,
    AssessmentRecord,
    CandidateAssessed,
    CandidatesRetrieved,
    ClaimRun,
    Command,
    CompleteRun,
    DeadlineExceeded,
    DispatchNotification,
    Fact,
    GatedCandidate,
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

Decision = tuple[RunState, list[Command]]


def initial_state(requested: Requested, budget: int = 5) -> RunState:
    """State of a run that has been requested but not yet claimed."""
    return RunState(
        need=requested.need,
        approval_key=requested.approval_key,
        retrigger=requested.retrigger,
        budget=budget,
    )


# =============================================================================
# Helpers
# =============================================================================


def _complete(
    state: RunState,
    reason: NoMatchReason,
    partial: bool = False,
    retryable: bool = False,
) -> Decision:
    matched = bool(state.notified)
    outcome = RunOutcome(
        need_id=state.need.need_id,
        notified_member_ids=state.notified,
        candidate_count=len(state.candidates),
        reason=None if matched else reason,
        partial=partial,
        retryable=retryable and not matched,
    )
    new_state = state.model_copy(
        update={"outcome": outcome, "completing": True, "holding_slot": None}
    )
    return new_state, [CompleteRun(run_id=state.run_id, outcome=outcome)]


def _current(state: RunState) -> Optional[GatedCandidate]:
    if state.phase != RunPhase.NOTIFYING or state.cursor >= len(state.relevant):
        return None
    return state.relevant[state.cursor]


def _advance(state: RunState) -> Decision:
    """Move to the next relevant candidate, or finish."""
    if len(state.notified) >= state.budget or state.cursor >= len(state.relevant):
        return _complete(state, NoMatchReason.NONE_NOTIFIED)

    nxt = state.relevant[state.cursor]
    return state, [ReserveSlot(member_id=nxt.candidate.member_id)]


def _next_candidate(state: RunState, notified: bool = False) -> Decision:
    update = {"cursor": state.cursor + 1, "holding_slot": None}
    if notified:
        update["notified"] = state.notified + (state.relevant[state.cursor].candidate.member_id,)
    return _advance(state.model_copy(update=update))


def _finish_gating(state: RunState) -> Decision:
    verdicts = {record.member_id: record.assessment for record in state.assessments}

    relevant = tuple(
        GatedCandidate(candidate=c, justification=verdicts[c.member_id].justification)
        for c in state.candidates
        if verdicts.get(c.member_id) is not None and verdicts[c.member_id].is_relevant
    )

    if not relevant:
        return _complete(state.model_copy(update={"relevant": ()}), NoMatchReason.NONE_RELEVANT)

    state = state.model_copy(
        update={"phase": RunPhase.NOTIFYING, "relevant": relevant, "cursor": 0}
    )
    return _advance(state)


def _record_assessment(state: RunState, record: AssessmentRecord) -> Decision:
    if state.phase != RunPhase.GATING:
        return state, []
    if all(c.member_id != record.member_id for c in state.candidates):
        return state, []
    if any(r.member_id == record.member_id for r in state.assessments):
        return state, []

    state = state.model_copy(update={"assessments": state.assessments + (record,)})
    if state.pending_assessments > 0:
        return state, []
    return _finish_gating(state)


# =============================================================================
# Transition function
# =============================================================================


def decide(state: RunState, fact: Fact) -> Decision:
    """Apply one fact to a run and return the new state and follow-up commands."""
    if state.done:
        return state, []

    if state.completing:
        if isinstance(fact, RunCompleted):
            return state.model_copy(update={"phase": RunPhase.COMPLETED, "done": True}), []
        return state, []

    if isinstance(fact, Requested):
        if state.phase != RunPhase.REQUESTED or state.run_id is not None:
            return state, []
        return state, [
            ClaimRun(
                need_id=state.need.need_id,
                approval_key=state.approval_key,
                retrigger=state.retrigger,
            )
        ]

    if isinstance(fact, RunClaimed):
        if state.phase != RunPhase.REQUESTED or state.run_id is not None:
            return state, []
        state = state.model_copy(update={"run_id": fact.run_id, "claimed_at": fact.claimed_at})
        if state.need.embedding is None:
            return _complete(state, NoMatchReason.NEED_HAS_NO_EMBEDDING)
        state = state.model_copy(update={"phase": RunPhase.RETRIEVING})
        return state, [RetrieveCandidates(need=state.need)]

    if isinstance(fact, RunRejected):
        if state.phase != RunPhase.REQUESTED or state.run_id is not None:
            return state, []
        return state.model_copy(update={"phase": RunPhase.COMPLETED, "done": True}), []

    if isinstance(fact, DeadlineExceeded):
        if state.run_id is None:
            # Never claimed; a stale-run reclaim can pick this up later
            return state.model_copy(update={"phase": RunPhase.COMPLETED, "done": True}), []
        held = state.holding_slot
        state, commands = _complete(state, NoMatchReason.DEADLINE_EXCEEDED, partial=True)
        if held is not None:
            release = ReleaseUnsentSlot(
                need_id=state.need.need_id,
                member_id=held,
                since=state.claimed_at,
            )
            commands = [release] + commands
        return state, commands

    if isinstance(fact, CandidatesRetrieved):
        if state.phase != RunPhase.RETRIEVING:
            return state, []
        state = state.model_copy(update={"candidates": tuple(fact.candidates)})
        if not state.candidates:
            return _complete(state, NoMatchReason.NO_CANDIDATES)
        state = state.model_copy(update={"phase": RunPhase.GATING})
        return state, [AssessCandidate(need=state.need, candidate=c) for c in state.candidates]

    if isinstance(fact, RetrievalFailed):
        if state.phase != RunPhase.RETRIEVING:
            return state, []
        return _complete(state, NoMatchReason.RETRIEVAL_UNAVAILABLE, retryable=True)

    if isinstance(fact, CandidateAssessed):
        return _record_assessment(
            state, AssessmentRecord(member_id=fact.member_id, assessment=fact.assessment)
        )

    if isinstance(fact, AssessmentFailed):
        return _record_assessment(state, AssessmentRecord(member_id=fact.member_id))

    current = _current(state)
    if current is None or current.candidate.member_id != getattr(fact, "member_id", None):
        return state, []

    if isinstance(fact, SlotReserved):
        if state.holding_slot is not None:
            return state, []
        state = state.model_copy(update={"holding_slot": fact.member_id})
        return state, [
            DispatchNotification(
                need=state.need,
                candidate=current.candidate,
                justification=current.justification,
            )
        ]

    if isinstance(fact, SlotDenied):
        if state.holding_slot is not None:
            return state, []
        return _next_candidate(state)

    if isinstance(fact, NotificationDispatched):
        if state.holding_slot != fact.member_id or fact.member_id in state.notified:
            return state, []
        if fact.outcome == DispatchOutcome.SENT:
            return _next_candidate(state, notified=True)
        if fact.outcome == DispatchOutcome.ALREADY_SENT:
            # Counts toward the budget, but no new row: hand the slot back
            state = state.model_copy(update={"notified": state.notified + (fact.member_id,)})
        return state, [ReleaseSlot(member_id=fact.member_id)]

    if isinstance(fact, SlotReleased):
        if state.holding_slot != fact.member_id:
            return state, []
        state = state.model_copy(update={"cursor": state.cursor + 1, "holding_slot": None})
        return _advance(state)

    return state, []
