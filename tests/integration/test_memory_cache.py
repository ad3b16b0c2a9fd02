from ops_agent.config import CacheConfig
from ops_agent.memory.classify import ITERATION_LIMIT_WARNING
from ops_agent.memory.fast_tier import TTLCache
from ops_agent.memory.manager import MemoryManager, question_hash
from ops_agent.store.database import Database

from fakes import TableEmbedder

ANSWER = "There are 3 running ECS instances in cn-hangzhou."


def test_question_hash_is_first_eight_sha256_bytes() -> None:
    digest = question_hash("list ECS")

    assert len(digest) == 16
    assert digest == question_hash("list ECS")
    assert digest != question_hash("list ECS ")


async def test_exact_cache_round_trip(memory: MemoryManager) -> None:
    assert await memory.get_cached_answer("alice", "list ECS") is None

    assert await memory.update_qa_cache("alice", "list ECS", ANSWER) is True

    assert await memory.get_cached_answer("alice", "list ECS") == ANSWER


async def test_exact_cache_refills_fast_tier_from_durable(database: Database) -> None:
    writer = MemoryManager(database, TTLCache())
    await writer.update_qa_cache(None, "list ECS", ANSWER)

    reader = MemoryManager(database, TTLCache())
    assert await reader.get_cached_answer("bob", "list ECS") == ANSWER
    await reader.drain()

    entries = await reader.get_cache_entries()
    assert entries[0].hit_count == 2
    assert entries[0].last_hit_at is not None


async def test_user_scoped_entries_do_not_leak(database: Database) -> None:
    writer = MemoryManager(database, TTLCache())
    await writer.update_qa_cache("alice", "my VPC", "Your default VPC is vpc-123456.")

    reader = MemoryManager(database, TTLCache())
    assert await reader.get_cached_answer("bob", "my VPC") is None
    assert await reader.get_cached_answer("alice", "my VPC") == "Your default VPC is vpc-123456."


async def test_error_and_short_answers_are_not_cached(memory: MemoryManager) -> None:
    assert await memory.update_qa_cache("alice", "q1", "❌ LLM call failed: timeout") is False
    assert await memory.update_qa_cache("alice", "q2", "ok") is False
    assert await memory.update_qa_cache("alice", "q3", ITERATION_LIMIT_WARNING.format(limit=10)) is False

    assert await memory.get_cache_entries() == []


async def test_rewriting_an_entry_updates_in_place(memory: MemoryManager) -> None:
    await memory.update_qa_cache("alice", "list ECS", ANSWER)
    await memory.update_qa_cache("alice", "list ECS", "There are now 4 running ECS instances.")

    entries = await memory.get_cache_entries()
    assert len(entries) == 1
    assert entries[0].answer == "There are now 4 running ECS instances."


async def test_semantic_cache_hit_at_threshold_and_miss_below(database: Database) -> None:
    embedder = TableEmbedder(
        {
            "list ECS instances": [1.0, 0.0],
            "show me the ECS instances": [0.9, 0.1],
            "what about buckets": [0.8, 0.6],
        }
    )
    manager = MemoryManager(
        database,
        TTLCache(),
        config=CacheConfig(similarity_threshold=0.85),
        embedder=embedder,
    )
    await manager.update_qa_cache("alice", "list ECS instances", ANSWER)

    assert await manager.get_semantic_cached_answer("alice", "show me the ECS instances") == ANSWER
    assert await manager.get_semantic_cached_answer("alice", "what about buckets") is None
    await manager.drain()


async def test_semantic_cache_skips_dimension_mismatch_and_embedding_failure(
    database: Database,
) -> None:
    embedder = TableEmbedder({"list ECS instances": [1.0, 0.0], "three dims": [1.0, 0.0, 0.0]})
    manager = MemoryManager(database, TTLCache(), embedder=embedder)
    await manager.update_qa_cache(None, "list ECS instances", ANSWER)

    assert await manager.get_semantic_cached_answer("alice", "three dims") is None
    assert await manager.get_semantic_cached_answer("alice", "unknown text") is None


async def test_semantic_cache_disabled_without_embedder(memory: MemoryManager) -> None:
    await memory.update_qa_cache("alice", "list ECS", ANSWER)

    assert memory.semantic_enabled is False
    assert await memory.get_semantic_cached_answer("alice", "list ECS") is None


async def test_history_is_chronological_and_refilled(database: Database) -> None:
    writer = MemoryManager(database, TTLCache(), history_limit=3)
    for i in range(5):
        await writer.save_message(7, "user" if i % 2 == 0 else "assistant", f"m{i}", "alice")

    reader = MemoryManager(database, TTLCache(), history_limit=3)
    history = await reader.get_conversation_history(7)
    assert [msg.content for msg in history] == ["m2", "m3", "m4"]

    await reader.save_message(7, "user", "m5", "alice")
    history = await reader.get_conversation_history(7)
    assert [msg.content for msg in history] == ["m3", "m4", "m5"]


async def test_user_context_update_invalidates_fast_tier(memory: MemoryManager) -> None:
    await memory.update_user_context("alice", "favorite_region", "cn-hangzhou")
    assert (await memory.get_user_context("alice")).values == {"favorite_region": "cn-hangzhou"}

    await memory.update_user_context("alice", "favorite_region", "cn-shanghai")
    await memory.update_user_context("alice", "default_vpc", "vpc-1")

    context = await memory.get_user_context("alice")
    assert context.values == {"favorite_region": "cn-shanghai", "default_vpc": "vpc-1"}


async def test_clear_error_cache_removes_newly_classified_entries(database: Database) -> None:
    writer = MemoryManager(database, TTLCache())
    await writer.update_qa_cache("alice", "q1", "quota exceeded for the account")
    await writer.update_qa_cache("alice", "q2", ANSWER)

    strict = MemoryManager(
        database,
        TTLCache(),
        classifier=writer.is_error_response.with_markers("quota exceeded"),
    )
    assert await strict.clear_error_cache() == 1
    assert [entry.question for entry in await strict.get_cache_entries()] == ["q2"]


async def test_clear_cache_and_stats(memory: MemoryManager) -> None:
    await memory.update_qa_cache("alice", "q1", ANSWER)
    await memory.update_qa_cache("bob", "q2", ANSWER)
    await memory.get_cached_answer("alice", "q1")
    await memory.get_cached_answer("alice", "nope")

    stats = await memory.cache_stats()
    assert stats["entries"] == 2
    assert stats["session_hits"] == 1
    assert stats["session_misses"] == 1
    assert stats["hit_rate"] == 0.5

    assert await memory.clear_cache(username="alice") == 1
    assert await memory.get_cached_answer("alice", "q1") is None
    assert await memory.get_cached_answer("bob", "q2") == ANSWER


async def test_fast_tier_prefers_user_entry_durable_tier_prefers_hits(database) -> None:
    manager = MemoryManager(database, TTLCache())
    await manager.update_qa_cache(None, "list ECS", "Global answer about ECS instances.")
    await manager.update_qa_cache("alice", "list ECS", "Alice's own answer about ECS.")
    await database.execute("UPDATE qa_cache SET hit_count = 50 WHERE username IS NULL")

    assert await manager.get_cached_answer("alice", "list ECS") == "Alice's own answer about ECS."

    await manager.fast.delete_prefix("qa:")
    assert await manager.get_cached_answer("alice", "list ECS") == "Global answer about ECS instances."
    await manager.drain()


async def test_uncacheable_answers_are_rejected(memory: MemoryManager) -> None:
    assert memory.is_cacheable(ANSWER)
    assert not memory.is_cacheable("short")
    assert not memory.is_cacheable("❌ LLM call failed: boom")

    assert await memory.update_qa_cache("alice", "q", "short") is False
    assert await memory.get_cache_entries() == []


async def test_semantic_cache_off_by_config_skips_embedding(database) -> None:
    embedder = TableEmbedder({"list ECS instances": [1.0, 0.0]})
    manager = MemoryManager(
        database, TTLCache(), config=CacheConfig(semantic_enabled=False), embedder=embedder
    )
    await manager.update_qa_cache("alice", "list ECS instances", ANSWER)

    assert await manager.get_semantic_cached_answer("alice", "list ECS instances") is None
    assert embedder.calls == 0
