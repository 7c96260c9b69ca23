"""Card/theme/spread catalog.

- ``CatalogStore`` loads the read-only catalog from ``data/catalog.json`` and
  validates it (unique ids, relevance in [0, 1], known references).
- ``CatalogRepository`` reads cards and spreads cache-aside: cache first, on a
  miss load from the store and write per-item keys plus the ``all`` key in one
  batch.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from .cache import Cache, Namespace
from .errors import CatalogError, SpreadNotFound
from .models import Card, CardThemeRelevance, Spread, Theme

log = logging.getLogger("tarot.catalog")

ALL_KEY = "all"

_CARDS = TypeAdapter(List[Card])
_SPREADS = TypeAdapter(List[Spread])


class CatalogStore:
    def __init__(
        self,
        themes: Sequence[Theme],
        cards: Sequence[Card],
        relevance: Sequence[CardThemeRelevance],
        spreads: Sequence[Spread] = (),
    ):
        self._themes = list(themes)
        self._cards = list(cards)
        self._relevance = list(relevance)
        self._spreads = list(spreads)
        self._by_card: Dict[str, Dict[str, float]] = {}
        for row in self._relevance:
            self._by_card.setdefault(row.card_id, {})[row.theme_id] = row.relevance
        self.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogStore":
        try:
            return cls(
                themes=[Theme.model_validate(t) for t in data.get("themes", [])],
                cards=[Card.model_validate(c) for c in data.get("cards", [])],
                relevance=[CardThemeRelevance.model_validate(r) for r in data.get("relevance", [])],
                spreads=[Spread.model_validate(s) for s in data.get("spreads", [])],
            )
        except ValidationError as e:
            raise CatalogError(f"Invalid catalog entry: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> "CatalogStore":
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise CatalogError(f"Catalog file not found at: {path}") from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CatalogError(f"Invalid JSON in {path}: {e}") from e
        store = cls.from_dict(data)
        log.info("Loaded catalog from %s: %d cards, %d themes, %d spreads",
                 path, len(store._cards), len(store._themes), len(store._spreads))
        return store

    def validate(self) -> None:
        for label, ids in (
            ("card", [c.id for c in self._cards]),
            ("theme", [t.id for t in self._themes]),
            ("spread", [s.id for s in self._spreads]),
        ):
            if len(ids) != len(set(ids)):
                raise CatalogError(f"Duplicate {label} ids detected.")

        card_ids = {c.id for c in self._cards}
        theme_ids = {t.id for t in self._themes}
        for row in self._relevance:
            if row.card_id not in card_ids:
                raise CatalogError(f"Relevance row references unknown card {row.card_id}")
            if row.theme_id not in theme_ids:
                raise CatalogError(f"Relevance row references unknown theme {row.theme_id}")

        for s in self._spreads:
            indexes = [p.index for p in s.positions]
            if len(indexes) != len(set(indexes)):
                raise CatalogError(f"Spread {s.id} has duplicate position indexes")

    def themes(self) -> List[Theme]:
        return list(self._themes)

    def theme_ids(self) -> List[str]:
        return [t.id for t in self._themes]

    def has_theme(self, theme_id: str) -> bool:
        return any(t.id == theme_id for t in self._themes)

    def cards(self) -> List[Card]:
        return list(self._cards)

    def card(self, card_id: str) -> Optional[Card]:
        for c in self._cards:
            if c.id == card_id:
                return c
        return None

    def spreads(self) -> List[Spread]:
        return list(self._spreads)

    def spread(self, spread_id: str) -> Optional[Spread]:
        for s in self._spreads:
            if s.id == spread_id:
                return s
        return None

    def relevance_for(self, card_id: str) -> Dict[str, float]:
        return dict(self._by_card.get(card_id, {}))

    def has_relevance(self) -> bool:
        return bool(self._relevance)

    def dominant_theme(self, card_id: str) -> Optional[str]:
        rel = self._by_card.get(card_id)
        if not rel:
            return None
        return max(sorted(rel), key=lambda theme_id: rel[theme_id])


class CatalogRepository:
    def __init__(self, store: CatalogStore, cache: Cache):
        self.store = store
        self.cache = cache

    async def cards(self) -> List[Card]:
        raw = await self.cache.get(Namespace.CARDS, ALL_KEY)
        if raw:
            return _CARDS.validate_json(raw)
        cards = self.store.cards()
        await self._populate(Namespace.CARDS, cards, _CARDS)
        return cards

    async def card(self, card_id: str) -> Optional[Card]:
        raw = await self.cache.get(Namespace.CARDS, card_id)
        if raw:
            return Card.model_validate_json(raw)
        for c in await self.cards():
            if c.id == card_id:
                return c
        return None

    async def spreads(self) -> List[Spread]:
        raw = await self.cache.get(Namespace.SPREADS, ALL_KEY)
        if raw:
            return _SPREADS.validate_json(raw)
        spreads = self.store.spreads()
        await self._populate(Namespace.SPREADS, spreads, _SPREADS)
        return spreads

    async def spread(self, spread_id: str) -> Spread:
        raw = await self.cache.get(Namespace.SPREADS, spread_id)
        if raw:
            return Spread.model_validate_json(raw)
        for s in await self.spreads():
            if s.id == spread_id:
                return s
        raise SpreadNotFound(f"Unknown spread id: {spread_id}")

    async def warm(self) -> None:
        await self.cards()
        await self.spreads()

    async def _populate(self, namespace: Namespace, items: List[Any], adapter: TypeAdapter) -> None:
        if not items:
            return
        batch = self.cache.batch()
        for item in items:
            batch.set(namespace, item.id, item.model_dump_json())
        batch.set(namespace, ALL_KEY, adapter.dump_json(items).decode("utf-8"))
        written = await batch.execute()
        log.info("Populated %s cache with %d keys", namespace.name.lower(), written)
