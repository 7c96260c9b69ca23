"""Persona-weighted card selection.

score(card) = sum over themes of relevance(card, theme) * weight(theme),
times the position's theme multiplier when a spread position is being filled.
A free-text query adds a rank-based semantic bonus in [0, 1] from embedding
similarity. Scores get a random jitter factor before ranking so equal
scores do not always produce the same draw. A persona with no themes, a
freshly initialized persona, or a catalog without relevance rows gives every
card the same base score: without a query that is a plain random draw, with
one the semantic bonus alone orders the cards.
"""

from __future__ import annotations

import json
import logging
import random
from typing import Dict, List, Optional, Sequence

from .cache import Cache, Namespace
from .catalog import CatalogRepository
from .config import OverdrawPolicy
from .errors import InsufficientCards, NoCardsAvailable
from .generation import Embedder, rank_by_similarity
from .models import Card, DrawnCard, PersonaVector, SpreadPosition
from .utils.rng import flip, jitter_factor, shuffled

log = logging.getLogger("tarot.selector")


class CardEmbeddingIndex:
    """Description embeddings per card.

    Vectors shipped in the catalog are used as is; the rest are embedded in
    one batch call and kept in the EMBEDDINGS cache namespace.
    """

    def __init__(self, embedder: Embedder, cache: Optional[Cache] = None):
        self.embedder = embedder
        self.cache = cache

    async def vectors(self, cards: Sequence[Card]) -> Dict[str, List[float]]:
        out: Dict[str, List[float]] = {c.id: c.embedding for c in cards if c.embedding}
        missing: List[Card] = []
        for card in cards:
            if card.id in out:
                continue
            raw = await self.cache.get(Namespace.EMBEDDINGS, card.id) if self.cache else None
            if raw:
                out[card.id] = json.loads(raw)
            else:
                missing.append(card)

        if missing:
            vectors = await self.embedder.embed_many([c.description for c in missing])
            batch = self.cache.batch() if self.cache else None
            for card, vector in zip(missing, vectors):
                out[card.id] = vector
                if batch is not None:
                    batch.set(Namespace.EMBEDDINGS, card.id, json.dumps(vector))
            if batch is not None:
                await batch.execute()
            log.info("Embedded %d card descriptions", len(missing))
        return out


class CardSelector:
    def __init__(
        self,
        catalog: CatalogRepository,
        embedder: Optional[Embedder] = None,
        embeddings: Optional[CardEmbeddingIndex] = None,
        overdraw_policy: OverdrawPolicy = "cap",
        jitter: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        if overdraw_policy not in ("cap", "fail"):
            raise ValueError(f"Unknown overdraw policy: {overdraw_policy}")
        self.catalog = catalog
        self.embedder = embedder
        self.embeddings = embeddings or (CardEmbeddingIndex(embedder, catalog.cache) if embedder else None)
        self.overdraw_policy = overdraw_policy
        self.jitter = jitter
        self.rng = rng or random.Random()

    def is_weighted(self, persona: PersonaVector) -> bool:
        return bool(persona.weights) and not persona.fresh and self.catalog.store.has_relevance()

    def score_cards(
        self,
        persona: PersonaVector,
        cards: Sequence[Card],
        semantic: Optional[Dict[str, float]] = None,
        multiplier: float = 1.0,
    ) -> Dict[str, float]:
        scores: Dict[str, float] = {}
        for card in cards:
            relevance = self.catalog.store.relevance_for(card.id)
            base = sum(r * persona.weight(theme_id) for theme_id, r in relevance.items())
            scores[card.id] = base * multiplier + (semantic or {}).get(card.id, 0.0)
        return scores

    async def semantic_scores(self, query: str, cards: Sequence[Card]) -> Dict[str, float]:
        if not self.embedder or not self.embeddings:
            return {}
        query_vector = await self.embedder.embed(query)
        ranked = rank_by_similarity(query_vector, await self.embeddings.vectors(cards))
        total = len(ranked)
        return {card_id: 1.0 - i / total for i, card_id in enumerate(ranked)}

    def _scores(
        self,
        persona: PersonaVector,
        cards: Sequence[Card],
        weighted: bool,
        semantic: Optional[Dict[str, float]],
        multiplier: float = 1.0,
    ) -> Optional[Dict[str, float]]:
        if weighted:
            return self.score_cards(persona, cards, semantic, multiplier)
        if semantic:
            # Flat persona base; only the query bonus orders the cards.
            return {c.id: semantic.get(c.id, 0.0) for c in cards}
        return None

    def _rank(self, cards: Sequence[Card], scores: Optional[Dict[str, float]], rng: random.Random) -> List[Card]:
        pool = shuffled(cards, rng)
        if scores is None:
            return pool
        keyed = [(scores[c.id] * jitter_factor(rng, self.jitter), c) for c in pool]
        keyed.sort(key=lambda pair: pair[0], reverse=True)
        return [c for _, c in keyed]

    @staticmethod
    def _drawn(card: Card, rng: random.Random, position: Optional[SpreadPosition] = None) -> DrawnCard:
        return DrawnCard(**card.model_dump(), is_reversed=flip(rng), position=position)

    async def select_cards(
        self,
        persona: PersonaVector,
        n: int,
        query: Optional[str] = None,
        positions: Optional[Sequence[SpreadPosition]] = None,
        rng: Optional[random.Random] = None,
    ) -> List[DrawnCard]:
        """Draw distinct cards for ``persona``.

        With ``positions`` one card is drawn per position (``n`` is ignored) and
        assigned to it. Asking for more cards than the catalog holds either caps
        the draw or raises ``InsufficientCards``, depending on the overdraw policy.
        ``rng`` replaces the selector's random source for this draw only.
        """
        rng = rng or self.rng
        slots = list(positions) if positions else None
        requested = len(slots) if slots else n
        if requested < 1:
            raise ValueError("At least one card must be requested")

        cards = await self.catalog.cards()
        if not cards:
            raise NoCardsAvailable("No cards available in the catalog")

        if requested > len(cards):
            if self.overdraw_policy == "fail":
                raise InsufficientCards(requested, len(cards))
            log.warning("Requested %d cards from a catalog of %d, capping", requested, len(cards))
            requested = len(cards)
            if slots:
                slots = slots[:requested]

        weighted = self.is_weighted(persona)
        semantic = await self.semantic_scores(query, cards) if query else None

        if slots is None:
            scores = self._scores(persona, cards, weighted, semantic)
            return [self._drawn(c, rng) for c in self._rank(cards, scores, rng)[:requested]]

        drawn: List[DrawnCard] = []
        remaining = list(cards)
        for position in slots:
            scores = self._scores(persona, remaining, weighted, semantic, position.theme_multiplier)
            card = self._rank(remaining, scores, rng)[0]
            remaining = [c for c in remaining if c.id != card.id]
            drawn.append(self._drawn(card, rng, position))
        return drawn
