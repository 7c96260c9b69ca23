"""Tests for persona-weighted card selection."""

from collections import Counter

import pytest

from conftest import FakeEmbedder
from tarot_engine.cache import Namespace
from tarot_engine.catalog import CatalogRepository
from tarot_engine.errors import InsufficientCards, NoCardsAvailable
from tarot_engine.models import PersonaVector
from tarot_engine.selector import CardEmbeddingIndex, CardSelector
from tarot_engine.utils.rng import seeded_random


def persona(weights, fresh=False):
    return PersonaVector(subject_id="user-1", weights=weights, fresh=fresh)


@pytest.fixture
def small_repo(small_catalog, memory_cache):
    return CatalogRepository(small_catalog(), memory_cache)


def selector_for(repo, **kwargs):
    kwargs.setdefault("rng", seeded_random("selector"))
    return CardSelector(repo, **kwargs)


class TestScoring:
    def test_score_is_relevance_times_weight(self, small_repo):
        selector = selector_for(small_repo)
        scores = selector.score_cards(persona({"love": 0.9, "career": 0.1}), small_repo.store.cards())
        assert scores["c-love"] == pytest.approx(0.45)
        assert scores["c-career"] == pytest.approx(0.05)

    def test_position_multiplier(self, small_repo):
        selector = selector_for(small_repo)
        scores = selector.score_cards(persona({"love": 0.9}), small_repo.store.cards(), multiplier=2.0)
        assert scores["c-love"] == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_semantic_rank_bonus(self, small_catalog, memory_cache):
        repo = CatalogRepository(small_catalog(), memory_cache)
        embedder = FakeEmbedder({"new job": [0.0, 1.0], "ambition": [0.0, 1.0], "union": [1.0, 0.0]})
        selector = selector_for(repo, embedder=embedder)

        semantic = await selector.semantic_scores("new job", repo.store.cards())
        assert semantic == {"c-career": 1.0, "c-love": 0.5}


class TestSelectCards:
    @pytest.mark.asyncio
    async def test_weighted_persona_prefers_heavier_theme(self, small_repo):
        selector = selector_for(small_repo, jitter=0.0)
        for _ in range(20):
            (card,) = await selector.select_cards(persona({"love": 0.9, "career": 0.1}), 1)
            assert card.id == "c-love"

    @pytest.mark.asyncio
    async def test_query_can_outrank_persona(self, small_catalog, memory_cache):
        repo = CatalogRepository(small_catalog(), memory_cache)
        embedder = FakeEmbedder({"new job": [0.0, 1.0], "ambition": [0.0, 1.0], "union": [1.0, 0.0]})
        selector = selector_for(repo, embedder=embedder, jitter=0.0)

        (card,) = await selector.select_cards(persona({"love": 0.9, "career": 0.1}), 1, query="new job")
        assert card.id == "c-career"

    @pytest.mark.asyncio
    async def test_fresh_persona_draws_uniformly(self, small_repo):
        selector = selector_for(small_repo, jitter=0.0)
        cold = persona({"love": 1.0, "career": 0.1}, fresh=True)
        assert selector.is_weighted(cold) is False

        seen = Counter()
        for _ in range(200):
            (card,) = await selector.select_cards(cold, 1)
            seen[card.id] += 1
        assert set(seen) == {"c-love", "c-career"}

    @pytest.mark.asyncio
    async def test_fresh_persona_still_follows_query(self, small_catalog, memory_cache):
        repo = CatalogRepository(small_catalog(), memory_cache)
        embedder = FakeEmbedder({"new job": [0.0, 1.0], "ambition": [0.0, 1.0], "union": [1.0, 0.0]})
        selector = selector_for(repo, embedder=embedder)
        cold = persona({"love": 0.5, "career": 0.5}, fresh=True)

        picks = Counter()
        for _ in range(40):
            (card,) = await selector.select_cards(cold, 1, query="new job")
            picks[card.id] += 1
        assert picks == {"c-career": 40}

    @pytest.mark.asyncio
    async def test_no_relevance_data_draws_uniformly(self, small_catalog, memory_cache):
        repo = CatalogRepository(small_catalog(with_relevance=False), memory_cache)
        selector = selector_for(repo)
        assert selector.is_weighted(persona({"love": 0.9})) is False
        cards = await selector.select_cards(persona({"love": 0.9}), 2)
        assert {c.id for c in cards} == {"c-love", "c-career"}

    @pytest.mark.asyncio
    async def test_empty_persona_is_unweighted(self, small_repo):
        assert selector_for(small_repo).is_weighted(persona({})) is False

    @pytest.mark.asyncio
    async def test_cards_are_distinct(self, catalog_repo):
        selector = selector_for(catalog_repo)
        cards = await selector.select_cards(persona({"love": 0.5}), 10)
        assert len({c.id for c in cards}) == 10

    @pytest.mark.asyncio
    async def test_both_orientations_occur(self, catalog_repo):
        selector = selector_for(catalog_repo)
        cards = await selector.select_cards(persona({"love": 0.5}), 30)
        assert {c.is_reversed for c in cards} == {True, False}

    @pytest.mark.asyncio
    async def test_reversal_rate_is_about_half(self, catalog_repo):
        selector = selector_for(catalog_repo)
        reversed_flags = []
        for _ in range(70):
            cards = await selector.select_cards(persona({"love": 0.5}), 30)
            reversed_flags.extend(c.is_reversed for c in cards)

        assert len(reversed_flags) == 2100
        assert 0.45 <= sum(reversed_flags) / len(reversed_flags) <= 0.55

    @pytest.mark.asyncio
    async def test_rng_override_for_one_draw(self, catalog_repo):
        selector = selector_for(catalog_repo)
        first = await selector.select_cards(persona({"love": 0.7}), 5, rng=seeded_random("fixed"))
        second = await selector.select_cards(persona({"love": 0.7}), 5, rng=seeded_random("fixed"))
        assert [(c.id, c.is_reversed) for c in first] == [(c.id, c.is_reversed) for c in second]

    @pytest.mark.asyncio
    async def test_spread_positions_assigned_in_order(self, catalog_repo):
        spread = await catalog_repo.spread("past-present-future")
        selector = selector_for(catalog_repo)
        cards = await selector.select_cards(persona({"love": 0.5}), 1, positions=spread.positions)

        assert [c.position.name for c in cards] == ["Past", "Present", "Future"]
        assert len({c.id for c in cards}) == 3

    @pytest.mark.asyncio
    async def test_overdraw_capped_by_default(self, small_repo):
        cards = await selector_for(small_repo).select_cards(persona({"love": 0.5}), 5)
        assert sorted(c.id for c in cards) == ["c-career", "c-love"]

    @pytest.mark.asyncio
    async def test_overdraw_caps_positions(self, small_repo, catalog_store):
        positions = catalog_store.spread("celtic-cross").positions
        cards = await selector_for(small_repo).select_cards(persona({"love": 0.5}), 1, positions=positions)
        assert [c.position.index for c in cards] == [1, 2]

    @pytest.mark.asyncio
    async def test_overdraw_fail_policy(self, small_repo):
        selector = selector_for(small_repo, overdraw_policy="fail")
        with pytest.raises(InsufficientCards) as excinfo:
            await selector.select_cards(persona({"love": 0.5}), 3)
        assert excinfo.value.requested == 3
        assert excinfo.value.available == 2

    @pytest.mark.asyncio
    async def test_empty_catalog(self, small_catalog, memory_cache):
        repo = CatalogRepository(small_catalog(cards=False), memory_cache)
        with pytest.raises(NoCardsAvailable):
            await selector_for(repo).select_cards(persona({"love": 0.5}), 1)

    @pytest.mark.asyncio
    async def test_zero_cards_rejected(self, small_repo):
        with pytest.raises(ValueError):
            await selector_for(small_repo).select_cards(persona({"love": 0.5}), 0)

    @pytest.mark.asyncio
    async def test_same_seed_same_draw(self, catalog_repo):
        first = await selector_for(catalog_repo).select_cards(persona({"love": 0.7}), 5)
        second = await selector_for(catalog_repo).select_cards(persona({"love": 0.7}), 5)
        assert [(c.id, c.is_reversed) for c in first] == [(c.id, c.is_reversed) for c in second]


def test_unknown_overdraw_policy(small_repo):
    with pytest.raises(ValueError):
        CardSelector(small_repo, overdraw_policy="wrap")


class TestEmbeddingIndex:
    @pytest.mark.asyncio
    async def test_missing_embeddings_computed_in_one_batch_and_cached(self, small_catalog, memory_cache):
        repo = CatalogRepository(small_catalog(), memory_cache)
        embedder = FakeEmbedder({"union": [1.0, 0.0], "ambition": [0.0, 1.0]})
        index = CardEmbeddingIndex(embedder, memory_cache)

        vectors = await index.vectors(await repo.cards())
        assert vectors == {"c-love": [1.0, 0.0], "c-career": [0.0, 1.0]}
        assert embedder.batches == [["union", "ambition"]]
        assert await memory_cache.get(Namespace.EMBEDDINGS, "c-love") == "[1.0, 0.0]"

        await index.vectors(await repo.cards())
        assert len(embedder.batches) == 1
