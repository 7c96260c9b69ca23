"""Builds the engine's components from ``Settings`` and wires them together.

Nothing here is a module-level singleton: the app factory and the tests each
build their own ``Services`` and may swap any collaborator in.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .agent.orchestrator import ReadingOrchestrator
from .agent.session_store import HistoryStore, SessionStore
from .cache import Cache, build_cache
from .catalog import CatalogRepository, CatalogStore
from .config import Settings
from .generation import Embedder, Generator, build_embedder, build_generator
from .persona import PersonaStore
from .selector import CardEmbeddingIndex, CardSelector

log = logging.getLogger("tarot.services")


@dataclass
class Services:
    settings: Settings
    cache: Cache
    catalog_store: CatalogStore
    catalog: CatalogRepository
    persona: PersonaStore
    embedder: Embedder
    generator: Generator
    selector: CardSelector
    sessions: SessionStore
    history: HistoryStore
    orchestrator: ReadingOrchestrator

    async def startup(self) -> None:
        await self.catalog.warm()
        if self.selector.embeddings is not None:
            await self.selector.embeddings.vectors(await self.catalog.cards())

    async def close(self) -> None:
        close = getattr(self.cache.backend, "close", None)
        if close is not None:
            await close()


def build_services(
    settings: Settings,
    cache: Optional[Cache] = None,
    generator: Optional[Generator] = None,
    embedder: Optional[Embedder] = None,
    rng: Optional[random.Random] = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    cache = cache or build_cache(
        settings.redis_url,
        retry_attempts=settings.cache_retry_attempts,
        retry_base_delay_s=settings.cache_retry_base_delay_s,
    )
    catalog_store = CatalogStore.from_file(settings.catalog_path)
    catalog = CatalogRepository(catalog_store, cache)
    persona = PersonaStore.from_settings(settings, catalog_store, clock=clock)
    embedder = embedder or build_embedder(settings)
    generator = generator or build_generator(settings)
    selector = CardSelector(
        catalog,
        embedder=embedder,
        embeddings=CardEmbeddingIndex(embedder, cache),
        overdraw_policy=settings.overdraw_policy,
        jitter=settings.score_jitter,
        rng=rng,
    )
    sessions = SessionStore(cache)
    history = HistoryStore(cache, catalog_store, clock=clock)
    orchestrator = ReadingOrchestrator(
        sessions,
        history,
        persona,
        selector,
        catalog,
        generator,
        model=settings.generation_model,
        default_card_count=settings.default_card_count,
        run_timeout_s=settings.run_timeout_s,
        clock=clock,
    )
    log.info("Services ready: cache=%s generator=%s embedder=%s",
             type(cache.backend).__name__, type(generator).__name__, type(embedder).__name__)
    return Services(
        settings=settings,
        cache=cache,
        catalog_store=catalog_store,
        catalog=catalog,
        persona=persona,
        embedder=embedder,
        generator=generator,
        selector=selector,
        sessions=sessions,
        history=history,
        orchestrator=orchestrator,
    )
