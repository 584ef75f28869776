"""
Matching Orchestrator Models
Immutable run state, commands and facts for the matching state machine.

Commands are effects the coordinator must perform; facts are what came
back. The machine only ever sees values, never clients or sessions.
"""

from datetime import datetime
from typing import Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from agents.delivery.models import DispatchOutcome
from agents.matching.models import MatchCandidate, NeedData, RelevanceAssessment
from backend.core.events import NoMatchReason
from backend.models import RunPhase


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# =============================================================================
# Run values
# =============================================================================


class GatedCandidate(_Frozen):
    """Candidate the relevance gate accepted, with its justification."""

    candidate: MatchCandidate
    justification: str


class AssessmentRecord(_Frozen):
    """Gate result for one candidate; assessment is None when the gate failed."""

    member_id: UUID
    assessment: Optional[RelevanceAssessment] = None


class RunOutcome(_Frozen):
    """
    Terminal result of a run.

    notified_member_ids non-empty means MatchesFound, otherwise
    NoMatchesFound with reason.
    """

    need_id: UUID
    notified_member_ids: tuple[UUID, ...] = ()
    candidate_count: int = 0
    reason: Optional[NoMatchReason] = None
    partial: bool = False
    retryable: bool = False

    @property
    def matched(self) -> bool:
        return bool(self.notified_member_ids)


class RunState(_Frozen):
    """Everything the machine knows about one run."""

    need: NeedData
    approval_key: str
    retrigger: bool = False
    budget: int = Field(default=5, ge=1, description="Max members to notify")

    phase: RunPhase = RunPhase.REQUESTED
    run_id: Optional[UUID] = None
    claimed_at: Optional[datetime] = None
    candidates: tuple[MatchCandidate, ...] = ()
    assessments: tuple[AssessmentRecord, ...] = ()
    relevant: tuple[GatedCandidate, ...] = ()
    cursor: int = 0
    holding_slot: Optional[UUID] = None
    notified: tuple[UUID, ...] = ()
    outcome: Optional[RunOutcome] = None
    completing: bool = False
    done: bool = False

    @property
    def pending_assessments(self) -> int:
        return len(self.candidates) - len(self.assessments)


# =============================================================================
# Commands
# =============================================================================


class ClaimRun(_Frozen):
    need_id: UUID
    approval_key: str
    retrigger: bool = False


class RetrieveCandidates(_Frozen):
    need: NeedData


class AssessCandidate(_Frozen):
    need: NeedData
    candidate: MatchCandidate


class ReserveSlot(_Frozen):
    member_id: UUID


class DispatchNotification(_Frozen):
    need: NeedData
    candidate: MatchCandidate
    justification: str


class ReleaseSlot(_Frozen):
    member_id: UUID


class ReleaseUnsentSlot(_Frozen):
    """
    Hand back a slot whose dispatch was cut short, unless this run recorded
    a notification for the member (sent_at at or after `since`).
    """

    need_id: UUID
    member_id: UUID
    since: Optional[datetime] = None


class CompleteRun(_Frozen):
    run_id: UUID
    outcome: RunOutcome


Command = Union[
    ClaimRun,
    RetrieveCandidates,
    AssessCandidate,
    ReserveSlot,
    DispatchNotification,
    ReleaseSlot,
    ReleaseUnsentSlot,
    CompleteRun,
]


# =============================================================================
# Facts
# =============================================================================


class Requested(_Frozen):
    """A FindMatchesRequested trigger for a loaded need."""

    need: NeedData
    approval_key: str
    retrigger: bool = False


class RunClaimed(_Frozen):
    run_id: UUID
    claimed_at: Optional[datetime] = None


class RunRejected(_Frozen):
    """Another run owns (or already finished) this need and approval."""


class CandidatesRetrieved(_Frozen):
    candidates: tuple[MatchCandidate, ...]


class RetrievalFailed(_Frozen):
    error: str


class CandidateAssessed(_Frozen):
    member_id: UUID
    assessment: RelevanceAssessment


class AssessmentFailed(_Frozen):
    member_id: UUID
    error: str


class SlotReserved(_Frozen):
    member_id: UUID


class SlotDenied(_Frozen):
    member_id: UUID


class NotificationDispatched(_Frozen):
    member_id: UUID
    outcome: DispatchOutcome
    error: Optional[str] = None


class SlotReleased(_Frozen):
    member_id: UUID


class DeadlineExceeded(_Frozen):
    """The run deadline passed before the pending effect finished."""


class RunCompleted(_Frozen):
    run_id: UUID


Fact = Union[
    Requested,
    RunClaimed,
    RunRejected,
    CandidatesRetrieved,
    RetrievalFailed,
    CandidateAssessed,
    AssessmentFailed,
    SlotReserved,
    SlotDenied,
    NotificationDispatched,
    SlotReleased,
    DeadlineExceeded,
    RunCompleted,
]
