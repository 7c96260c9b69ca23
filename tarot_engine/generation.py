"""Generation and embedding boundaries.

With an OpenAI key the OpenAI clients are used. Without one the engine still
works end to end: ``TemplateGenerator`` composes readings from the card block
of the prompt and ``HashingEmbedder`` embeds text by feature hashing. Those are
picked once at startup, never as a fallback for a failing API call: an
unreachable service surfaces as ``GenerationError``.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import AsyncIterator, Dict, List, Protocol, Sequence

import numpy as np
from openai import AsyncOpenAI, OpenAIError

from .errors import GenerationError
from .models import ChatMessage

log = logging.getLogger("tarot.generation")


class Generator(Protocol):
    async def complete(self, messages: Sequence[ChatMessage], model: str) -> str: ...

    def stream(self, messages: Sequence[ChatMessage], model: str) -> AsyncIterator[str]: ...


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]: ...


class OpenAIGenerator:
    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 60.0,
        client: AsyncOpenAI | None = None,
        temperature: float = 0.7,
        max_tokens: int = 800,
    ):
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def complete(self, messages: Sequence[ChatMessage], model: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=[m.model_dump() for m in messages],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as e:
            raise GenerationError(f"Completion failed: {e}") from e

        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not content:
            raise GenerationError("Completion returned no content")
        return content

    async def stream(self, messages: Sequence[ChatMessage], model: str) -> AsyncIterator[str]:
        try:
            stream = await self.client.chat.completions.create(
                model=model,
                messages=[m.model_dump() for m in messages],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except OpenAIError as e:
            raise GenerationError(f"Streaming completion failed: {e}") from e


_CARD_LINE = re.compile(r"^Card \d+.*$", re.MULTILINE)


class TemplateGenerator:
    """Deterministic generator used when no API key is configured."""

    async def complete(self, messages: Sequence[ChatMessage], model: str) -> str:
        system = "\n".join(m.content for m in messages if m.role == "system")
        question = next((m.content for m in reversed(messages) if m.role == "user"), "")
        cards = _CARD_LINE.findall(system)

        if not cards:
            return (
                "Let's explore this more deeply. Which card or aspect of your reading "
                "would you like to look at next?"
            )

        lines = [f"- {c.split(':', 1)[-1].strip()}" for c in cards]
        opening = f"On your question \"{question.strip()}\": " if question.strip() else ""
        return (
            f"{opening}this reading describes the current pattern and what it asks of you.\n"
            + "\n".join(lines)
            + "\nTreat this as guidance, not a fixed outcome."
        )

    async def stream(self, messages: Sequence[ChatMessage], model: str) -> AsyncIterator[str]:
        text = await self.complete(messages, model)
        for word in re.findall(r"\S+\s*", text):
            yield word


class OpenAIEmbedder:
    # OpenAI caps a single embeddings request at 2048 inputs.
    BATCH_SIZE = 2048

    def __init__(self, api_key: str | None = None, model: str = "text-embedding-3-small",
                 timeout: float = 60.0, client: AsyncOpenAI | None = None):
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)
        self.model = model

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        out: List[List[float]] = []
        for i in range(0, len(texts), self.BATCH_SIZE):
            batch = list(texts[i:i + self.BATCH_SIZE])
            try:
                response = await self.client.embeddings.create(model=self.model, input=batch)
            except OpenAIError as e:
                raise GenerationError(f"Embedding failed: {e}") from e
            out.extend(d.embedding for d in response.data)
        return out


class HashingEmbedder:
    """Bag-of-words feature hashing into a fixed-length unit vector."""

    def __init__(self, dimensions: int = 256):
        self.dimensions = dimensions

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimensions, dtype=np.float64)
        for token in re.findall(r"[a-z']+", text.lower()):
            digest = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16)
            sign = 1.0 if (digest >> 64) & 1 else -1.0
            vec[digest % self.dimensions] += sign
        norm = np.linalg.norm(vec)
        return vec / norm if norm else vec

    async def embed(self, text: str) -> List[float]:
        return self._vector(text).tolist()

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        return [self._vector(t).tolist() for t in texts]


def rank_by_similarity(query: Sequence[float], candidates: Dict[str, Sequence[float]]) -> List[str]:
    """Candidate ids ordered from most to least cosine-similar to ``query``."""
    if not candidates:
        return []
    ids = sorted(candidates)
    matrix = np.asarray([candidates[i] for i in ids], dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(q) or 1.0)
    norms[norms == 0] = 1.0
    sims = matrix @ q / norms
    # Stable on ties so equal similarities keep id order.
    order = np.argsort(-sims, kind="stable")
    return [ids[i] for i in order]


def build_generator(settings) -> Generator:
    if settings.openai_api_key:
        return OpenAIGenerator(api_key=settings.openai_api_key, timeout=settings.generation_timeout_s)
    log.info("OPENAI_API_KEY not set, using template generator")
    return TemplateGenerator()


def build_embedder(settings) -> Embedder:
    if settings.openai_api_key:
        return OpenAIEmbedder(api_key=settings.openai_api_key, model=settings.embedding_model,
                              timeout=settings.generation_timeout_s)
    log.info("OPENAI_API_KEY not set, using hashing embedder")
    return HashingEmbedder()
