from ops_agent.memory.fast_tier import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)
    await cache.set("k", "v")

    clock.now += 9
    assert await cache.get("k") == "v"

    clock.now += 2
    assert await cache.get("k") is None


async def test_append_trims_and_refreshes_ttl() -> None:
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)

    for i in range(5):
        clock.now += 6
        await cache.append("conv", i, max_length=3)

    assert await cache.get_list("conv") == [2, 3, 4]


async def test_append_without_create_leaves_missing_list_absent() -> None:
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)
    await cache.set_list("conv", [1])
    clock.now += 11

    assert await cache.append("conv", 2, create=False) is False
    assert await cache.get_list("conv") == []

    await cache.set_list("conv", [1])
    assert await cache.append("conv", 2, create=False) is True
    assert await cache.get_list("conv") == [1, 2]


async def test_delete_prefix_and_mapping_overlay() -> None:
    cache = TTLCache()
    await cache.set("qa:alice:1", "a")
    await cache.set("qa:*:1", "b")
    await cache.set("conv:1:history", [])
    await cache.update_mapping("user:alice:context", {"region": "cn-hangzhou"})
    await cache.update_mapping("user:alice:context", {"vpc": "vpc-1"})

    assert await cache.delete_prefix("qa:") == 2
    assert await cache.get("qa:alice:1") is None
    assert await cache.get("user:alice:context") == {"region": "cn-hangzhou", "vpc": "vpc-1"}


async def test_stats_counts_expired_keys() -> None:
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)
    await cache.set("short", 1, ttl=1)
    await cache.set("long", 2)
    clock.now += 5

    stats = await cache.stats()
    assert stats == {"total_keys": 2, "active_keys": 1, "expired_keys": 1}
    assert await cache.clear_expired() == 1
