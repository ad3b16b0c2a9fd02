import pytest

from ops_agent.memory.embedder import CachedEmbedder, HashingEmbedder, cosine_similarity
from ops_agent.memory.fast_tier import TTLCache

from fakes import TableEmbedder


async def test_hashing_embedder_is_deterministic_and_normalised() -> None:
    embedder = HashingEmbedder(dimension=64)

    first = await embedder.embed("list ecs instances")
    second = await embedder.embed("list ecs instances")

    assert first == second
    assert len(first) == 64
    assert abs(sum(value * value for value in first) - 1.0) < 1e-9
    assert await embedder.embed("   ") == [0.0] * 64


async def test_hashing_embedder_places_overlapping_texts_closer() -> None:
    embedder = HashingEmbedder()
    base = await embedder.embed("list ecs instances in hangzhou")
    near = await embedder.embed("list ecs instances in beijing")
    far = await embedder.embed("rotate jenkins credentials")

    assert cosine_similarity(base, near) > cosine_similarity(base, far)


async def test_cached_embedder_memoises_vectors_in_fast_tier() -> None:
    inner = TableEmbedder({"hello": [1.0, 0.0]})
    embedder = CachedEmbedder(inner, TTLCache())

    assert await embedder.embed("hello") == [1.0, 0.0]
    assert await embedder.embed("hello") == [1.0, 0.0]
    assert inner.calls == 1
    assert embedder.model == "table"


def test_cosine_similarity_rejects_mismatched_dimensions() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 1.0], [2.0, 2.0]) == pytest.approx(1.0)
