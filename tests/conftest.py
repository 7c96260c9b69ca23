"""Shared fixtures and fakes."""

import asyncio
from typing import Dict, List, Optional, Sequence

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tarot_engine.cache import Cache, MemoryBackend
from tarot_engine.catalog import CatalogRepository, CatalogStore
from tarot_engine.config import DEFAULT_CATALOG, Settings
from tarot_engine.errors import GenerationError
from tarot_engine.models import ChatMessage
from tarot_engine.persona import PersonaStore
from tarot_engine.services import build_services
from tarot_engine.utils.rng import seeded_random

DAY = 24 * 3600


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, days: float = 0.0, seconds: float = 0.0) -> None:
        self.now += days * DAY + seconds


class FakeRedis:
    """Async redis stand-in covering the calls RedisBackend makes."""

    def __init__(self, fail_times: int = 0):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.fail_times = fail_times
        self.pipelines = 0
        self.closed = False

    def _maybe_fail(self) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RedisConnectionError("Connection refused")

    async def get(self, key):
        self._maybe_fail()
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self._maybe_fail()
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        self._maybe_fail()
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    def pipeline(self, transaction=True):
        self.pipelines += 1
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


class FakePipeline:
    def __init__(self, redis: FakeRedis):
        self.redis = redis
        self.ops: List[tuple] = []

    def set(self, key, value, ex=None):
        self.ops.append(("set", key, value, ex))
        return self

    def delete(self, key):
        self.ops.append(("delete", key, None, None))
        return self

    async def execute(self):
        self.redis._maybe_fail()
        results = []
        for op, key, value, ex in self.ops:
            if op == "set":
                self.redis.store[key] = value
                self.redis.ttls[key] = ex
                results.append(True)
            else:
                self.redis.ttls.pop(key, None)
                results.append(1 if self.redis.store.pop(key, None) is not None else 0)
        self.ops = []
        return results


class FakeGenerator:
    """Numbered replies; ``fail_on`` holds 1-based call numbers that raise."""

    def __init__(self, fail_on: Sequence[int] = (), delay: float = 0.0,
                 chunks: Sequence[str] = ("The ", "cards ", "speak.")):
        self.calls: List[List[ChatMessage]] = []
        self.fail_on = set(fail_on)
        self.delay = delay
        self.chunks = list(chunks)

    async def complete(self, messages, model):
        self.calls.append(list(messages))
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.calls) in self.fail_on:
            raise GenerationError("Generation service unavailable")
        return f"reply {len(self.calls)}"

    async def stream(self, messages, model):
        self.calls.append(list(messages))
        if len(self.calls) in self.fail_on:
            raise GenerationError("Generation service unavailable")
        for chunk in self.chunks:
            yield chunk


class FakeEmbedder:
    """Looks texts up in a fixed table; unknown texts embed to ``default``."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default=(0.0, 0.0)):
        self.vectors = vectors or {}
        self.default = list(default)
        self.batches: List[List[str]] = []

    async def embed(self, text):
        return list(self.vectors.get(text, self.default))

    async def embed_many(self, texts):
        self.batches.append(list(texts))
        return [list(self.vectors.get(t, self.default)) for t in texts]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog_store():
    return CatalogStore.from_file(DEFAULT_CATALOG)


@pytest.fixture
def memory_cache(clock):
    return Cache(MemoryBackend(clock=clock))


@pytest.fixture
def catalog_repo(catalog_store, memory_cache):
    return CatalogRepository(catalog_store, memory_cache)


@pytest.fixture
def persona_store(tmp_path, catalog_store, clock):
    return PersonaStore(str(tmp_path / "persona.sqlite"), catalog_store, clock=clock)


@pytest.fixture
def rng():
    return seeded_random("tests", "draw")


@pytest.fixture
def settings(tmp_path):
    return Settings(persona_db_path=str(tmp_path / "persona.sqlite"), cron_secret="s3cret")


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def services(settings, memory_cache, generator, rng, clock):
    return build_services(
        settings,
        cache=memory_cache,
        generator=generator,
        embedder=FakeEmbedder(),
        rng=rng,
        clock=clock,
    )


def _small_catalog(with_relevance: bool = True, cards: bool = True) -> CatalogStore:
    data = {
        "themes": [{"id": "love", "name": "Love"}, {"id": "career", "name": "Career"}],
        "cards": [],
        "relevance": [],
    }
    if cards:
        data["cards"] = [
            {"id": "c-love", "name": "Lovers", "arcana": "major", "rank": "6", "description": "union"},
            {"id": "c-career", "name": "Chariot", "arcana": "major", "rank": "7", "description": "ambition"},
        ]
    if cards and with_relevance:
        data["relevance"] = [
            {"card_id": "c-love", "theme_id": "love", "relevance": 0.5},
            {"card_id": "c-career", "theme_id": "career", "relevance": 0.5},
        ]
    return CatalogStore.from_dict(data)


@pytest.fixture
def small_catalog():
    """Two themes and two cards, one per theme, each at relevance 0.5."""
    return _small_catalog
