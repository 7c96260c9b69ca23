"""One function per non-terminal step.

Each step returns the action that advances the session, or a ``SetError``
carrying the step's error code. Failures are turned into actions here; only
``CacheUnavailable`` escapes, since a dead cache makes the run unrecoverable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from ..catalog import CatalogRepository
from ..errors import (
    CacheUnavailable,
    GenerationError,
    InsufficientCards,
    NoCardsAvailable,
    SpreadNotFound,
)
from ..generation import Generator
from ..models import ReadingStep, SessionState
from ..persona import PersonaStore
from ..prompts import analysis_messages, interpretation_messages, response_messages
from ..selector import CardSelector
from .state import (
    Action,
    AnalyzeSpread,
    CompleteReading,
    DrawCards,
    GenerateResponse,
    InterpretCards,
    SetError,
)

log = logging.getLogger("tarot.agent.steps")

DRAW_CARDS_ERROR = "DRAW_CARDS_ERROR"
ANALYZE_SPREAD_ERROR = "ANALYZE_SPREAD_ERROR"
INTERPRET_ERROR = "INTERPRET_ERROR"
GENERATE_RESPONSE_ERROR = "GENERATE_RESPONSE_ERROR"
EXECUTION_ERROR = "EXECUTION_ERROR"


@dataclass
class StepContext:
    state: SessionState
    persona_store: PersonaStore
    selector: CardSelector
    catalog: CatalogRepository
    generator: Generator
    model: str = "gpt-4o"
    default_card_count: int = 3


def _failed(code: str, step: str, e: Exception) -> SetError:
    return SetError(code=code, message=str(e) or type(e).__name__, details={"step": step})


async def draw_cards(ctx: StepContext) -> Action:
    state = ctx.state
    spread_id = state.metadata.get("spread_id")
    try:
        spread = await ctx.catalog.spread(spread_id) if spread_id else None
        persona = await asyncio.to_thread(ctx.persona_store.get_persona, state.subject_id, state.is_anonymous)
        positions = spread.positions if spread else None
        cards = await ctx.selector.select_cards(
            persona,
            state.metadata.get("card_count") or ctx.default_card_count,
            query=state.query or None,
            positions=positions or None,
        )
    except CacheUnavailable:
        raise
    except (SpreadNotFound, NoCardsAvailable, InsufficientCards) as e:
        log.warning("Card draw failed session=%s: %s", state.session_id, e)
        return _failed(DRAW_CARDS_ERROR, "draw_cards", e)
    except Exception as e:
        log.exception("Unexpected failure drawing cards session=%s", state.session_id)
        return _failed(EXECUTION_ERROR, "draw_cards", e)

    log.info("Drew %d cards session=%s spread=%s", len(cards), state.session_id, spread_id or "-")
    return DrawCards(cards=tuple(cards), spread=spread)


async def analyze_spread(ctx: StepContext) -> Action:
    state = ctx.state
    if not state.drawn_cards:
        return SetError(code=ANALYZE_SPREAD_ERROR, message="No cards to analyze")
    try:
        analysis = await ctx.generator.complete(
            analysis_messages(state.drawn_cards, state.spread, state.query), ctx.model
        )
    except CacheUnavailable:
        raise
    except GenerationError as e:
        log.warning("Analysis failed session=%s: %s", state.session_id, e)
        return _failed(ANALYZE_SPREAD_ERROR, "analyze_spread", e)
    except Exception as e:
        log.exception("Unexpected failure analyzing spread session=%s", state.session_id)
        return _failed(EXECUTION_ERROR, "analyze_spread", e)
    return AnalyzeSpread(analysis=analysis)


async def interpret_cards(ctx: StepContext) -> Action:
    state = ctx.state
    if not state.analysis:
        return SetError(code=INTERPRET_ERROR, message="No analysis to interpret")
    try:
        interpretation = await ctx.generator.complete(
            interpretation_messages(state.drawn_cards, state.spread, state.query, state.analysis), ctx.model
        )
    except CacheUnavailable:
        raise
    except GenerationError as e:
        log.warning("Interpretation failed session=%s: %s", state.session_id, e)
        return _failed(INTERPRET_ERROR, "interpret_cards", e)
    except Exception as e:
        log.exception("Unexpected failure interpreting cards session=%s", state.session_id)
        return _failed(EXECUTION_ERROR, "interpret_cards", e)
    return InterpretCards(interpretation=interpretation)


async def generate_response(ctx: StepContext) -> Action:
    state = ctx.state
    if not state.interpretation:
        return SetError(code=GENERATE_RESPONSE_ERROR, message="No interpretation to respond from")
    try:
        response = await ctx.generator.complete(
            response_messages(state.drawn_cards, state.spread, state.query, state.analysis, state.interpretation),
            ctx.model,
        )
    except CacheUnavailable:
        raise
    except GenerationError as e:
        log.warning("Response generation failed session=%s: %s", state.session_id, e)
        return _failed(GENERATE_RESPONSE_ERROR, "generate_response", e)
    except Exception as e:
        log.exception("Unexpected failure generating response session=%s", state.session_id)
        return _failed(EXECUTION_ERROR, "generate_response", e)
    return GenerateResponse(response=response)


async def complete_reading(ctx: StepContext) -> Action:
    return CompleteReading()


STEP_FUNCTIONS: Dict[ReadingStep, Callable[[StepContext], Awaitable[Action]]] = {
    ReadingStep.INITIALIZING: draw_cards,
    ReadingStep.DRAWING_CARDS: analyze_spread,
    ReadingStep.ANALYZING_SPREAD: interpret_cards,
    ReadingStep.INTERPRETING: generate_response,
    ReadingStep.RESPONDING: complete_reading,
}
