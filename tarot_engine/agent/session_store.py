"""Session state and per-subject history, persisted through ``Cache``.

- Session state lives under SESSION_STATE for one hour.
- Recent readings (newest first, at most ``MAX_RECENT_READINGS``) and usage
  patterns are keyed by subject and updated together in one batch when a
  reading completes.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence

from pydantic import TypeAdapter

from ..cache import Cache, Namespace
from ..catalog import CatalogStore
from ..models import DrawnCard, RecentReading, SessionState, Spread, UserPattern

log = logging.getLogger("tarot.agent.session_store")

MAX_RECENT_READINGS = 10

_RECENT = TypeAdapter(List[RecentReading])


def subject_key(subject_id: str, is_anonymous: bool = False) -> str:
    return f"anon:{subject_id}" if is_anonymous else subject_id


class SessionStore:
    def __init__(self, cache: Cache):
        self.cache = cache

    async def get(self, session_id: str) -> Optional[SessionState]:
        raw = await self.cache.get(Namespace.SESSION_STATE, session_id)
        if not raw:
            return None
        return SessionState.model_validate_json(raw)

    async def save(self, state: SessionState) -> SessionState:
        saved = state.model_copy(update={"version": state.version + 1})
        await self.cache.set(Namespace.SESSION_STATE, saved.session_id, saved.model_dump_json())
        return saved

    async def clear(self, session_id: str) -> None:
        await self.cache.delete(Namespace.SESSION_STATE, session_id)


class HistoryStore:
    def __init__(self, cache: Cache, catalog: CatalogStore, clock: Callable[[], float] = time.time):
        self.cache = cache
        self.catalog = catalog
        self._clock = clock

    async def get_recent_readings(self, subject_id: str, is_anonymous: bool = False) -> List[RecentReading]:
        raw = await self.cache.get(Namespace.RECENT_READINGS, subject_key(subject_id, is_anonymous))
        return _RECENT.validate_json(raw) if raw else []

    async def get_patterns(self, subject_id: str, is_anonymous: bool = False) -> UserPattern:
        raw = await self.cache.get(Namespace.USER_PATTERNS, subject_key(subject_id, is_anonymous))
        return UserPattern.model_validate_json(raw) if raw else UserPattern()

    async def record_reading(
        self,
        subject_id: str,
        cards: Sequence[DrawnCard],
        spread: Optional[Spread] = None,
        is_anonymous: bool = False,
    ) -> RecentReading:
        """Prepend a finished reading and bump the subject's usage counters."""
        key = subject_key(subject_id, is_anonymous)
        reading = RecentReading(cards=list(cards), spread=spread, timestamp=self._clock())

        recent = [reading] + await self.get_recent_readings(subject_id, is_anonymous)
        recent = recent[:MAX_RECENT_READINGS]

        patterns = await self.get_patterns(subject_id, is_anonymous)
        for card in cards:
            patterns.common_cards[card.id] = patterns.common_cards.get(card.id, 0) + 1
            theme_id = self.catalog.dominant_theme(card.id)
            if theme_id:
                patterns.themes[theme_id] = patterns.themes.get(theme_id, 0) + 1
        if spread is not None:
            patterns.preferred_spreads[spread.id] = patterns.preferred_spreads.get(spread.id, 0) + 1

        async with self.cache.batch() as batch:
            batch.set(Namespace.RECENT_READINGS, key, _RECENT.dump_json(recent).decode("utf-8"))
            batch.set(Namespace.USER_PATTERNS, key, patterns.model_dump_json())

        log.info("Recorded reading subject=%s cards=%d history=%d", key, len(cards), len(recent))
        return reading

    async def clear_subject(self, subject_id: str, is_anonymous: bool = False) -> None:
        key = subject_key(subject_id, is_anonymous)
        async with self.cache.batch() as batch:
            batch.delete(Namespace.RECENT_READINGS, key)
            batch.delete(Namespace.USER_PATTERNS, key)
