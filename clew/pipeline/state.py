"""
Clew Pipeline - Debug Session State Machine

Transitions are a pure table lookup: (state, event) -> (next state, effects).
PipelineContext owns the live state for one session, applies the effects
to the proposal/déjà-vu slots it holds, and logs every transition.

State flow:
IDLE -> DETECTING (submit)
DETECTING -> DEJA_VU (near-duplicate found) or CLASSIFYING (no match)
DEJA_VU -> AWAITING_FEEDBACK (apply past fix) or CLASSIFYING (continue analysis)
CLASSIFYING -> RETRIEVING -> EXTRACTING (fixes found) -> RANKING
                          -> RANKING (no fixes)
RANKING -> AWAITING_FEEDBACK (proposal ready)
AWAITING_FEEDBACK -> RECORDING_FEEDBACK -> IDLE (stored)
                                        -> AWAITING_FEEDBACK (write failed, retry)
AWAITING_FEEDBACK / DEJA_VU -> IDLE (discard)
Any -> IDLE (reset)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import TYPE_CHECKING, NamedTuple

from clew.exceptions import StateTransitionError
from clew.logging import PipelineLogEntry, get_session_id, now_iso, pipeline_logger

if TYPE_CHECKING:
    from clew.knowledge.similarity import DejaVuMatch
    from clew.pipeline.orchestrator import Proposal

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Possible states of one debugging session."""

    IDLE = auto()  # Nothing in flight, no proposal
    DETECTING = auto()  # Looking for a near-duplicate past fix
    DEJA_VU = auto()  # Past fix offered, waiting for apply / continue
    CLASSIFYING = auto()  # Error Analyzer running
    RETRIEVING = auto()  # Searching past fixes
    EXTRACTING = auto()  # Principle Extractor running
    RANKING = auto()  # Scoring stored principles
    AWAITING_FEEDBACK = auto()  # Proposal shown, waiting for helpful / not helpful
    RECORDING_FEEDBACK = auto()  # Persisting feedback


class PipelineEvent(Enum):
    SUBMIT = auto()
    SUBMIT_SKIP_DEJAVU = auto()
    DEJA_VU_FOUND = auto()
    NO_MATCH = auto()
    CLASSIFIED = auto()
    FIXES_FOUND = auto()
    NO_FIXES = auto()
    EXTRACTED = auto()
    RANKED = auto()
    APPLY_PAST_FIX = auto()
    RECORD_FEEDBACK = auto()
    FEEDBACK_RECORDED = auto()
    FEEDBACK_FAILED = auto()
    DISCARD = auto()
    RESET = auto()


class Effect(Enum):
    """Side effects on the context's proposal and déjà-vu slots."""

    CLEAR_PROPOSAL = auto()
    HOLD_PROPOSAL = auto()  # event payload becomes the live proposal
    CLEAR_DEJA_VU = auto()
    HOLD_DEJA_VU = auto()  # event payload becomes the pending déjà-vu match


class Transition(NamedTuple):
    state: PipelineState
    effects: tuple[Effect, ...] = ()


# States in which a run (or feedback write) is in flight
BUSY_STATES = frozenset(
    {
        PipelineState.DETECTING,
        PipelineState.CLASSIFYING,
        PipelineState.RETRIEVING,
        PipelineState.EXTRACTING,
        PipelineState.RANKING,
        PipelineState.RECORDING_FEEDBACK,
    }
)

# A new submission may start from these; it overwrites any live proposal
SUBMITTABLE_STATES = (PipelineState.IDLE, PipelineState.DEJA_VU, PipelineState.AWAITING_FEEDBACK)

_START_FRESH = (Effect.CLEAR_PROPOSAL, Effect.CLEAR_DEJA_VU)

TRANSITIONS: dict[tuple[PipelineState, PipelineEvent], Transition] = {
    **{
        (state, PipelineEvent.SUBMIT): Transition(PipelineState.DETECTING, _START_FRESH)
        for state in SUBMITTABLE_STATES
    },
    **{
        (state, PipelineEvent.SUBMIT_SKIP_DEJAVU): Transition(PipelineState.CLASSIFYING, _START_FRESH)
        for state in SUBMITTABLE_STATES
    },
    (PipelineState.DETECTING, PipelineEvent.DEJA_VU_FOUND): Transition(
        PipelineState.DEJA_VU, (Effect.HOLD_DEJA_VU,)
    ),
    (PipelineState.DETECTING, PipelineEvent.NO_MATCH): Transition(PipelineState.CLASSIFYING),
    (PipelineState.CLASSIFYING, PipelineEvent.CLASSIFIED): Transition(PipelineState.RETRIEVING),
    (PipelineState.RETRIEVING, PipelineEvent.FIXES_FOUND): Transition(PipelineState.EXTRACTING),
    (PipelineState.RETRIEVING, PipelineEvent.NO_FIXES): Transition(PipelineState.RANKING),
    (PipelineState.EXTRACTING, PipelineEvent.EXTRACTED): Transition(PipelineState.RANKING),
    (PipelineState.RANKING, PipelineEvent.RANKED): Transition(
        PipelineState.AWAITING_FEEDBACK, (Effect.HOLD_PROPOSAL,)
    ),
    (PipelineState.DEJA_VU, PipelineEvent.APPLY_PAST_FIX): Transition(
        PipelineState.AWAITING_FEEDBACK, (Effect.CLEAR_DEJA_VU, Effect.HOLD_PROPOSAL)
    ),
    (PipelineState.AWAITING_FEEDBACK, PipelineEvent.RECORD_FEEDBACK): Transition(
        PipelineState.RECORDING_FEEDBACK
    ),
    (PipelineState.RECORDING_FEEDBACK, PipelineEvent.FEEDBACK_RECORDED): Transition(
        PipelineState.IDLE, (Effect.CLEAR_PROPOSAL,)
    ),
    (PipelineState.RECORDING_FEEDBACK, PipelineEvent.FEEDBACK_FAILED): Transition(
        PipelineState.AWAITING_FEEDBACK
    ),
    (PipelineState.AWAITING_FEEDBACK, PipelineEvent.DISCARD): Transition(
        PipelineState.IDLE, (Effect.CLEAR_PROPOSAL,)
    ),
    (PipelineState.DEJA_VU, PipelineEvent.DISCARD): Transition(
        PipelineState.IDLE, (Effect.CLEAR_DEJA_VU,)
    ),
    **{
        (state, PipelineEvent.RESET): Transition(PipelineState.IDLE, _START_FRESH)
        for state in PipelineState
    },
}


def next_state(state: PipelineState, event: PipelineEvent) -> Transition | None:
    """Look up the transition for an event, or None if it is not allowed."""
    return TRANSITIONS.get((state, event))


def valid_events(state: PipelineState) -> list[PipelineEvent]:
    """Events accepted in a given state."""
    return [event for (s, event) in TRANSITIONS if s == state]


@dataclass
class Submission:
    """The error text and scope of the current run."""

    error_text: str
    session_id: str
    project_id: str
    stack_text: str = ""


@dataclass
class PipelineContext:
    """
    Live state of one debugging session.

    Holds at most one proposal (between submit and feedback) and at most
    one pending déjà-vu match. Both are overwritten by a new submission.
    """

    state: PipelineState = PipelineState.IDLE
    session_id: str = ""
    submission: Submission | None = None
    proposal: Proposal | None = None
    deja_vu: DejaVuMatch | None = None
    last_activity: datetime = field(default_factory=datetime.now)
    history: list[tuple[PipelineState, PipelineEvent, PipelineState]] = field(default_factory=list)

    @property
    def is_busy(self) -> bool:
        return self.state in BUSY_STATES

    def transition(self, event: PipelineEvent, payload: object = None) -> bool:
        """
        Apply an event if the table allows it.

        Args:
            event: The event to apply
            payload: Value for HOLD_* effects (a Proposal or DejaVuMatch)

        Returns:
            True if the transition was valid and performed, False otherwise
        """
        transition = next_state(self.state, event)
        if transition is None:
            return False

        previous = self.state
        for effect in transition.effects:
            self._apply(effect, payload)
        self.state = transition.state
        self.last_activity = datetime.now()
        self.history.append((previous, event, transition.state))
        self._log(previous, event, transition)
        return True

    def require_transition(self, event: PipelineEvent, payload: object = None) -> None:
        """
        Apply an event, raising if the current state does not accept it.

        Raises:
            StateTransitionError: If the transition is not valid
        """
        if not self.transition(event, payload):
            valid_names = ", ".join(e.name for e in valid_events(self.state)) or "none"
            raise StateTransitionError(
                f"Invalid pipeline event {event.name} in state {self.state.name}. "
                f"Valid events: {valid_names}",
                from_state=self.state.name,
                to_state=event.name,
            )

    def reset(self) -> None:
        """Return to IDLE, dropping any proposal or pending match."""
        self.transition(PipelineEvent.RESET)

    def _apply(self, effect: Effect, payload: object) -> None:
        if effect is Effect.CLEAR_PROPOSAL:
            self.proposal = None
        elif effect is Effect.HOLD_PROPOSAL:
            self.proposal = payload  # type: ignore[assignment]
        elif effect is Effect.CLEAR_DEJA_VU:
            self.deja_vu = None
        elif effect is Effect.HOLD_DEJA_VU:
            self.deja_vu = payload  # type: ignore[assignment]

    def _log(self, previous: PipelineState, event: PipelineEvent, transition: Transition) -> None:
        logger.debug(f"{previous.name} --{event.name}--> {transition.state.name}")
        entry = PipelineLogEntry(
            timestamp=now_iso(),
            session_id=self.session_id or get_session_id(),
            event_type="transition",
            from_state=previous.name,
            to_state=transition.state.name,
            event=event.name,
            effects=[effect.name for effect in transition.effects],
        )
        pipeline_logger.info(entry.to_json())
