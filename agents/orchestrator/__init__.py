"""
Matching Orchestrator Agent

Runs the match-and-notify pipeline once a need is approved:
- Pure state machine deciding the next effects (machine.decide)
- Run claims keyed by (need, approval) so duplicate triggers are ignored
- Deadline-bounded execution of retrieval, gating, throttling and dispatch
- Redis Streams consumer with retries and a dead letter queue

Usage:
    from agents.orchestrator import create_orchestrator

    orchestrator = create_orchestrator(session_factory, event_bus)
    outcome = await orchestrator.handle(FindMatchesRequestedEvent(need_id=need_id))
"""

from .consumer import MatchingConsumer
from .coordinator import MatchingOrchestrator, build_terminal_event, create_orchestrator
from .machine import decide, initial_state
from .models import RunOutcome, RunState
from .runs import RunStore

__all__ = [
    # Coordinator
    "MatchingOrchestrator",
    "build_terminal_event",
    "create_orchestrator",
    # Machine
    "decide",
    "initial_state",
    # Consumer
    "MatchingConsumer",
    # Runs
    "RunStore",
    # Models
    "RunOutcome",
    "RunState",
]
