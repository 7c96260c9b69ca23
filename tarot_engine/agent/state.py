"""Reading state machine: steps, actions and the reducer.

``reduce`` is pure. It returns a new ``SessionState`` and never mutates the one
passed in. An action whose target step is not reachable from the current step
leaves the state unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from ..models import AgentError, DrawnCard, ReadingStep, SessionState, Spread

log = logging.getLogger("tarot.agent.state")

S = ReadingStep

TRANSITIONS: Dict[ReadingStep, FrozenSet[ReadingStep]] = {
    S.INITIALIZING: frozenset({S.DRAWING_CARDS, S.ERROR}),
    S.DRAWING_CARDS: frozenset({S.ANALYZING_SPREAD, S.ERROR}),
    S.ANALYZING_SPREAD: frozenset({S.INTERPRETING, S.ERROR}),
    S.INTERPRETING: frozenset({S.RESPONDING, S.ERROR}),
    S.RESPONDING: frozenset({S.COMPLETED, S.ERROR}),
    S.COMPLETED: frozenset({S.INITIALIZING}),
    S.ERROR: frozenset({S.INITIALIZING}),
}

TERMINAL_STEPS = frozenset({S.COMPLETED, S.ERROR})


def can_transition(current: ReadingStep, target: ReadingStep) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(state: SessionState) -> bool:
    return state.step in TERMINAL_STEPS


@dataclass(frozen=True)
class DrawCards:
    cards: Tuple[DrawnCard, ...]
    spread: Optional[Spread] = None


@dataclass(frozen=True)
class AnalyzeSpread:
    analysis: str


@dataclass(frozen=True)
class InterpretCards:
    interpretation: str


@dataclass(frozen=True)
class GenerateResponse:
    response: str


@dataclass(frozen=True)
class CompleteReading:
    pass


@dataclass(frozen=True)
class SetError:
    code: str
    message: str
    details: Any = field(default=None, compare=False)


@dataclass(frozen=True)
class Reset:
    pass


Action = Union[DrawCards, AnalyzeSpread, InterpretCards, GenerateResponse, CompleteReading, SetError, Reset]

ACTION_TARGET: Dict[type, ReadingStep] = {
    DrawCards: S.DRAWING_CARDS,
    AnalyzeSpread: S.ANALYZING_SPREAD,
    InterpretCards: S.INTERPRETING,
    GenerateResponse: S.RESPONDING,
    CompleteReading: S.COMPLETED,
    SetError: S.ERROR,
    Reset: S.INITIALIZING,
}


def initial_state(session_id: str, subject_id: str, is_anonymous: bool = False, version: int = 0) -> SessionState:
    return SessionState(
        session_id=session_id,
        subject_id=subject_id,
        is_anonymous=is_anonymous,
        step=S.INITIALIZING,
        version=version,
    )


def reduce(state: SessionState, action: Action) -> SessionState:
    target = ACTION_TARGET.get(type(action))
    if target is None:
        raise TypeError(f"Unknown action: {action!r}")

    if not can_transition(state.step, target):
        log.warning("Rejected transition session=%s %s -> %s (%s)",
                    state.session_id, state.step.value, target.value, type(action).__name__)
        return state

    if isinstance(action, Reset):
        return initial_state(state.session_id, state.subject_id, state.is_anonymous, state.version)

    update: Dict[str, Any] = {"step": target}
    if isinstance(action, DrawCards):
        cards: List[DrawnCard] = list(action.cards)
        update.update(drawn_cards=cards, spread=action.spread)
    elif isinstance(action, AnalyzeSpread):
        update["analysis"] = action.analysis
    elif isinstance(action, InterpretCards):
        update["interpretation"] = action.interpretation
    elif isinstance(action, GenerateResponse):
        update["response"] = action.response
    elif isinstance(action, SetError):
        update["error"] = AgentError(code=action.code, message=action.message, details=action.details)

    log.info("Transition session=%s %s -> %s", state.session_id, state.step.value, target.value)
    return state.model_copy(update=update, deep=True)
