"""Drives a reading session through its steps and streams one event per step.

A run holds the session's lock from load to the final save. Every state is
saved before its event is yielded, so a caller that stops consuming the
stream leaves the last completed step persisted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, List, Optional, Sequence

from ..catalog import CatalogRepository
from ..errors import GenerationError
from ..generation import Generator
from ..intent import detect_intent
from ..models import ChatMessage, DrawnCard, PersonaVector, ReadingStep, SessionState, StreamEvent
from ..persona import PersonaStore
from ..prompts import chat_messages
from ..selector import CardSelector
from ..streaming import (
    ANALYSIS_PRODUCED,
    CARDS_DRAWN,
    FINAL_RESPONSE,
    INTERPRETATION_PRODUCED,
    READING_COMPLETED,
    TEXT_DELTA,
    done_event,
    error_event,
)
from ..utils.locks import KeyedLock
from ..utils.rng import seeded_random
from .session_store import HistoryStore, SessionStore
from .state import (
    Action,
    AnalyzeSpread,
    CompleteReading,
    DrawCards,
    GenerateResponse,
    InterpretCards,
    Reset,
    SetError,
    initial_state,
    is_terminal,
    reduce,
)
from .steps import EXECUTION_ERROR, STEP_FUNCTIONS, StepContext

log = logging.getLogger("tarot.agent.orchestrator")


class ReadingOrchestrator:
    def __init__(
        self,
        sessions: SessionStore,
        history: HistoryStore,
        persona_store: PersonaStore,
        selector: CardSelector,
        catalog: CatalogRepository,
        generator: Generator,
        model: str = "gpt-4o",
        default_card_count: int = 3,
        run_timeout_s: float = 120.0,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions = sessions
        self.history = history
        self.persona_store = persona_store
        self.selector = selector
        self.catalog = catalog
        self.generator = generator
        self.model = model
        self.default_card_count = default_card_count
        self.run_timeout_s = run_timeout_s
        self.locks = locks or KeyedLock()
        self._clock = clock

    # Persona and selection pass-throughs

    def get_persona(self, subject_id: str, is_anonymous: bool = False) -> PersonaVector:
        return self.persona_store.get_persona(subject_id, is_anonymous=is_anonymous)

    def update_theme_weight(self, subject_id: str, theme_id: str, delta: float, is_anonymous: bool = False) -> float:
        return self.persona_store.update_theme_weight(subject_id, theme_id, delta, is_anonymous=is_anonymous)

    async def select_cards(
        self,
        subject_id: str,
        n: Optional[int] = None,
        query: Optional[str] = None,
        spread_id: Optional[str] = None,
        is_anonymous: bool = False,
        seed: Optional[str] = None,
    ) -> List[DrawnCard]:
        """Draw cards outside a reading run.

        A ``seed`` makes the draw reproducible for this subject.
        """
        spread = await self.catalog.spread(spread_id) if spread_id else None
        persona = await asyncio.to_thread(self.persona_store.get_persona, subject_id, is_anonymous)
        return await self.selector.select_cards(
            persona,
            n if n is not None else self.default_card_count,
            query=query,
            positions=(spread.positions or None) if spread else None,
            rng=seeded_random(seed, subject_id) if seed else None,
        )

    # Sessions

    async def get_session_state(self, session_id: str) -> Optional[SessionState]:
        return await self.sessions.get(session_id)

    async def reset_session(self, session_id: str) -> Optional[SessionState]:
        async with self.locks.hold(session_id):
            state = await self.sessions.get(session_id)
            if state is None:
                return None
            fresh = initial_state(state.session_id, state.subject_id, state.is_anonymous, state.version)
            log.info("Reset session=%s from %s", session_id, state.step.value)
            return await self.sessions.save(fresh)

    async def start_reading(
        self,
        subject_id: str,
        session_id: str,
        query: str,
        spread_id: Optional[str] = None,
        is_anonymous: bool = False,
        card_count: Optional[int] = None,
    ) -> AsyncIterator[StreamEvent]:
        async with self.locks.hold(session_id):
            state = await self.sessions.get(session_id)
            if state is None:
                state = initial_state(session_id, subject_id, is_anonymous)
            elif is_terminal(state):
                state = reduce(state, Reset())

            if state.step == ReadingStep.INITIALIZING:
                state = state.model_copy(update={
                    "subject_id": subject_id,
                    "is_anonymous": is_anonymous,
                    "metadata": {
                        "query": query,
                        "spread_id": spread_id,
                        "card_count": card_count,
                        "started_at": self._clock(),
                    },
                })
                state = await self.sessions.save(state)
            else:
                log.info("Resuming session=%s at %s", session_id, state.step.value)

            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.run_timeout_s

            while not is_terminal(state):
                action = await self._run_step(state, deadline - loop.time())
                next_state = reduce(state, action)
                if next_state.step == state.step:
                    action = SetError(code=EXECUTION_ERROR, message=f"Step {state.step.value} made no progress")
                    next_state = reduce(state, action)
                if is_terminal(next_state):
                    await self._finish(next_state)
                    state = next_state
                else:
                    state = await self.sessions.save(next_state)
                yield self._event_for(state, action)

            yield done_event()

    async def _finish(self, state: SessionState) -> None:
        """Record a completed reading and store the reset state.

        Runs before the terminal event is yielded.
        """
        if state.step == ReadingStep.COMPLETED:
            await self.history.record_reading(
                state.subject_id, state.drawn_cards, state.spread, is_anonymous=state.is_anonymous
            )
        await self.sessions.save(reduce(state, Reset()))

    async def _run_step(self, state: SessionState, remaining: float) -> Action:
        if remaining <= 0:
            return SetError(code=EXECUTION_ERROR, message="Reading exceeded its run deadline")
        ctx = StepContext(
            state=state,
            persona_store=self.persona_store,
            selector=self.selector,
            catalog=self.catalog,
            generator=self.generator,
            model=self.model,
            default_card_count=self.default_card_count,
        )
        step = STEP_FUNCTIONS[state.step]
        try:
            return await asyncio.wait_for(step(ctx), timeout=remaining)
        except asyncio.TimeoutError:
            log.warning("Step %s timed out session=%s", state.step.value, state.session_id)
            return SetError(code=EXECUTION_ERROR, message="Reading exceeded its run deadline",
                            details={"step": state.step.value})

    @staticmethod
    def _event_for(state: SessionState, action: Action) -> StreamEvent:
        if isinstance(action, SetError):
            return error_event(action.code, action.message, action.details)
        if isinstance(action, DrawCards):
            return StreamEvent(type=CARDS_DRAWN, content={
                "cards": [c.model_dump(mode="json") for c in state.drawn_cards],
                "spread": state.spread.model_dump(mode="json") if state.spread else None,
            })
        if isinstance(action, AnalyzeSpread):
            return StreamEvent(type=ANALYSIS_PRODUCED, content=state.analysis)
        if isinstance(action, InterpretCards):
            return StreamEvent(type=INTERPRETATION_PRODUCED, content=state.interpretation)
        if isinstance(action, GenerateResponse):
            return StreamEvent(type=FINAL_RESPONSE, content=state.response)
        if isinstance(action, CompleteReading):
            return StreamEvent(type=READING_COMPLETED, content={
                "session_id": state.session_id,
                "card_ids": [c.id for c in state.drawn_cards],
            })
        raise TypeError(f"No event for action {action!r}")

    # Chat

    def handle_message(
        self,
        subject_id: str,
        session_id: str,
        messages: Sequence[ChatMessage],
        is_anonymous: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        """Route the latest user message to a reading run or to plain chat."""
        latest = next((m.content for m in reversed(messages) if m.role == "user"), "")
        intent = detect_intent(latest)
        if not intent.wants_reading:
            return self.process_chat(subject_id, session_id, messages)

        log.info("Message routed to a %s reading session=%s spread=%s count=%s",
                 intent.kind, session_id, intent.spread_id or "-", intent.card_count)
        return self.start_reading(
            subject_id,
            session_id,
            latest,
            spread_id=intent.spread_id,
            is_anonymous=is_anonymous,
            card_count=intent.card_count,
        )

    async def process_chat(
        self,
        subject_id: str,
        session_id: str,
        messages: Sequence[ChatMessage],
    ) -> AsyncIterator[StreamEvent]:
        """Stream a follow-up answer grounded in the session's drawn cards, if any."""
        async with self.locks.hold(session_id):
            state = await self.sessions.get(session_id)

        cards = state.drawn_cards if state else []
        spread = state.spread if state else None
        if not cards:
            is_anonymous = state.is_anonymous if state else False
            recent = await self.history.get_recent_readings(subject_id, is_anonymous=is_anonymous)
            if recent:
                cards, spread = recent[0].cards, recent[0].spread
        prompt = chat_messages(messages, cards, spread)
        try:
            async for delta in self.generator.stream(prompt, self.model):
                yield StreamEvent(type=TEXT_DELTA, content=delta)
        except GenerationError as e:
            log.warning("Chat generation failed subject=%s session=%s: %s", subject_id, session_id, e)
            yield error_event(EXECUTION_ERROR, str(e))
        yield done_event()
