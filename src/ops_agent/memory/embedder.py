"""Embedding abstractions and a deterministic baseline implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from hashlib import blake2b, sha256
from math import sqrt
from typing import Any

import structlog

from ops_agent.memory.fast_tier import TTLCache

logger = structlog.get_logger(__name__)


class Embedder(ABC):
    """Embedder interface used by the semantic cache and knowledge retrieval."""

    model: str = "unknown"

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed one text."""


class HashingEmbedder(Embedder):
    """Deterministic sparse-like embedding without external model calls.

    Used for tests and offline runs. Texts sharing most tokens land close to
    each other, which is enough to exercise the semantic cache end to end.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension
        self.model = f"hashing-{dimension}"

    async def embed(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class OpenAIEmbedder(Embedder):
    """OpenAI-compatible embeddings through langchain-openai."""

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        if client is None:
            from langchain_openai import OpenAIEmbeddings

            client = OpenAIEmbeddings(
                model=model,
                api_key=api_key,
                base_url=base_url,
                timeout=30,
            )
        self._client = client

    async def embed(self, text: str) -> list[float]:
        vector = await self._client.aembed_query(text)
        if not vector:
            raise ValueError("empty embedding result")
        return [float(x) for x in vector]


class CachedEmbedder(Embedder):
    """Memoises another embedder's vectors in the fast tier."""

    def __init__(self, inner: Embedder, cache: TTLCache, ttl: float | None = None) -> None:
        self.inner = inner
        self.model = inner.model
        self._cache = cache
        self._ttl = ttl

    def _key(self, text: str) -> str:
        digest = sha256(f"{self.model}:{text}".encode("utf-8")).hexdigest()
        return f"emb:{digest[:32]}"

    async def embed(self, text: str) -> list[float]:
        key = self._key(text)
        cached = await self._cache.get(key)
        if cached is not None:
            logger.debug("embedding_cache_hit", key=key[:16])
            return list(cached)
        vector = await self.inner.embed(text)
        await self._cache.set(key, vector, ttl=self._ttl)
        return vector


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
