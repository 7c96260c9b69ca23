"""Tests for the reading state machine."""

import pytest

from tarot_engine.agent.state import (
    ACTION_TARGET,
    TRANSITIONS,
    AnalyzeSpread,
    CompleteReading,
    DrawCards,
    GenerateResponse,
    InterpretCards,
    Reset,
    SetError,
    can_transition,
    initial_state,
    is_terminal,
    reduce,
)
from tarot_engine.models import DrawnCard, ReadingStep

S = ReadingStep


def card(card_id="major-00"):
    return DrawnCard(id=card_id, name="The Fool", arcana="major", rank="0", description="A leap")


def happy_path():
    return [
        DrawCards(cards=(card(),)),
        AnalyzeSpread(analysis="analysis"),
        InterpretCards(interpretation="interpretation"),
        GenerateResponse(response="response"),
        CompleteReading(),
    ]


def test_every_step_has_transitions():
    assert set(TRANSITIONS) == set(ReadingStep)
    assert set(ACTION_TARGET.values()) == set(ReadingStep)


def test_happy_path_is_five_transitions():
    state = initial_state("s1", "user-1")
    steps = []
    for action in happy_path():
        state = reduce(state, action)
        steps.append(state.step)

    assert steps == [S.DRAWING_CARDS, S.ANALYZING_SPREAD, S.INTERPRETING, S.RESPONDING, S.COMPLETED]
    assert is_terminal(state)
    assert state.response == "response"
    assert [c.id for c in state.drawn_cards] == ["major-00"]


def test_reduce_does_not_mutate_input():
    state = initial_state("s1", "user-1")
    after = reduce(state, DrawCards(cards=(card(),)))
    assert state.step == S.INITIALIZING
    assert state.drawn_cards == []
    assert after is not state


@pytest.mark.parametrize("action", [
    AnalyzeSpread(analysis="x"),
    InterpretCards(interpretation="x"),
    GenerateResponse(response="x"),
    CompleteReading(),
    Reset(),
])
def test_skipping_ahead_is_rejected(action):
    state = initial_state("s1", "user-1")
    assert reduce(state, action) is state


def test_terminal_states_only_reset():
    state = initial_state("s1", "user-1")
    for action in happy_path():
        state = reduce(state, action)

    assert reduce(state, DrawCards(cards=(card(),))) is state
    assert reduce(state, SetError(code="EXECUTION_ERROR", message="late")) is state

    fresh = reduce(state, Reset())
    assert fresh.step == S.INITIALIZING
    assert fresh.drawn_cards == []
    assert fresh.response is None
    assert fresh.subject_id == "user-1"


@pytest.mark.parametrize("steps_before", range(5))
def test_error_reachable_from_every_running_step(steps_before):
    state = initial_state("s1", "user-1")
    for action in happy_path()[:steps_before]:
        state = reduce(state, action)

    failed = reduce(state, SetError(code="INTERPRET_ERROR", message="boom", details={"step": "x"}))
    assert failed.step == S.ERROR
    assert failed.error.code == "INTERPRET_ERROR"
    assert failed.error.details == {"step": "x"}
    assert reduce(failed, Reset()).error is None


def test_can_transition():
    assert can_transition(S.INITIALIZING, S.DRAWING_CARDS)
    assert not can_transition(S.INITIALIZING, S.COMPLETED)
    assert can_transition(S.ERROR, S.INITIALIZING)
    assert not can_transition(S.COMPLETED, S.ERROR)


def test_unknown_action_type():
    with pytest.raises(TypeError):
        reduce(initial_state("s1", "user-1"), object())
