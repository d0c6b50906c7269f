"""Tests for the priority/recency eviction manager."""

import asyncio

import pytest

from core.config import EvictionConfig
from core.exceptions import CacheCapacityError, StoreTransactionError
from services.offline_cache import CacheMetadataRepository, EvictionManager, UserRepository


class FlakyRepository:
    """Record repository whose deletes fail for chosen keys."""

    collection = "flaky"

    def __init__(self, failing_keys):
        self.failing_keys = set(failing_keys)
        self.deleted = []

    async def get_by_id(self, key):
        return {"id": key}

    async def delete(self, key):
        if key in self.failing_keys:
            raise StoreTransactionError(self.collection, "delete", "disk I/O error")
        self.deleted.append(key)
        return True


@pytest.fixture
def make_manager(database, clock):
    def factory(**config) -> EvictionManager:
        settings = {"max_size_bytes": 1000, "max_items": 10, "ttl_seconds": 3600}
        settings.update(config)
        users = UserRepository(database)
        return EvictionManager(CacheMetadataRepository(database), EvictionConfig(**settings),
                               {users.collection: users}, clock=clock)
    return factory


async def cached_keys(manager):
    return sorted(entry.key for entry in await manager.metadata.get_all())


class TestBudgets:
    async def test_ceiling_holds_after_every_insert(self, make_manager, clock):
        manager = make_manager(max_size_bytes=1000, max_items=4)
        sizes = [300, 250, 400, 100, 600, 50, 999, 10, 10, 10, 700, 200]

        for i, size in enumerate(sizes):
            clock.advance(1)
            await manager.add_to_cache(f"key-{i}", "users", size, priority=1 + i % 3)
            stats = await manager.get_cache_stats()
            assert stats["total_size"] <= 1000
            assert stats["total_items"] <= 4

    async def test_concurrent_inserts_at_ceiling_respect_item_budget(self, make_manager):
        manager = make_manager(max_items=2)
        await manager.add_to_cache("a", "users", 10)

        await asyncio.gather(
            manager.add_to_cache("b", "users", 10),
            manager.add_to_cache("c", "users", 10),
            manager.add_to_cache("d", "users", 10),
        )

        keys = await cached_keys(manager)
        assert len(keys) <= 2
        assert "d" in keys

    async def test_insert_evicts_older_equal_priority_first(self, make_manager, make_user, clock):
        manager = make_manager(max_items=2)
        users = manager.repositories["users"]
        for key, priority in [("A", 1), ("B", 1), ("C", 2)]:
            await users.create(make_user(key))
            clock.advance(1)
            await manager.add_to_cache(key, "users", 10, priority=priority)

        assert await cached_keys(manager) == ["B", "C"]
        assert await users.get_by_id("A") is None
        assert await users.get_by_id("B") is not None

    async def test_lower_priority_evicted_first_on_equal_access_time(self, make_manager):
        manager = make_manager()
        await manager.add_to_cache("important", "users", 10, priority=2)
        await manager.add_to_cache("disposable", "users", 10, priority=1)

        evicted = await manager.evict_lru(target_items=1)

        assert evicted == 1
        assert await cached_keys(manager) == ["important"]

    async def test_re_adding_a_key_never_evicts_itself(self, make_manager, clock):
        manager = make_manager(max_items=2)
        await manager.add_to_cache("A", "users", 10)
        clock.advance(1)
        await manager.add_to_cache("B", "users", 10)
        clock.advance(1)
        await manager.add_to_cache("A", "users", 20)

        assert await cached_keys(manager) == ["A", "B"]

    async def test_entry_larger_than_budget_rejected(self, make_manager):
        manager = make_manager(max_size_bytes=100)
        with pytest.raises(CacheCapacityError):
            await manager.add_to_cache("huge", "users", 101)
        assert await cached_keys(manager) == []

    async def test_delete_failure_is_skipped(self, make_manager, clock):
        manager = make_manager()
        flaky = FlakyRepository(failing_keys={"stuck"})
        manager.register(flaky)
        for key in ["stuck", "ok-1", "ok-2"]:
            clock.advance(1)
            await manager.add_to_cache(key, "flaky", 10)

        evicted = await manager.evict_lru(target_items=1)

        assert evicted == 2
        assert flaky.deleted == ["ok-1", "ok-2"]
        assert await cached_keys(manager) == ["stuck"]


class TestExpiry:
    async def test_expired_entry_absent_from_get_and_stats(self, make_manager, make_user, clock):
        manager = make_manager()
        users = manager.repositories["users"]
        await users.create(make_user("stale"))
        await manager.add_to_cache("stale", "users", 10, expires_at=clock.now + 5)
        await manager.add_to_cache("fresh", "users", 10)
        clock.advance(10)

        stats = await manager.get_cache_stats()
        assert stats["total_items"] == 1

        assert await manager.get("stale") is None
        assert await users.get_by_id("stale") is None
        assert await cached_keys(manager) == ["fresh"]

    async def test_ttl_since_last_access(self, make_manager, clock):
        manager = make_manager(ttl_seconds=60)
        await manager.add_to_cache("idle", "users", 10)
        clock.advance(61)

        assert await manager.get("idle") is None
        assert await cached_keys(manager) == []

    async def test_remove_expired_ignores_size_pressure(self, make_manager, clock):
        manager = make_manager(ttl_seconds=60)
        await manager.add_to_cache("old", "users", 10)
        clock.advance(30)
        await manager.add_to_cache("young", "users", 10)
        clock.advance(31)

        result = await manager.cleanup()

        assert result == {"expired": 1, "evicted": 0}
        assert await cached_keys(manager) == ["young"]


class TestAccessTracking:
    async def test_hit_refreshes_recency_and_count(self, make_manager, make_user, clock):
        manager = make_manager(ttl_seconds=60)
        users = manager.repositories["users"]
        await users.create(make_user("user-1"))
        await manager.add_to_cache("user-1", "users", 10)

        clock.advance(50)
        record = await manager.get("user-1")
        clock.advance(50)
        again = await manager.get("user-1")

        assert record.id == again.id == "user-1"
        entry = await manager.metadata.get_by_id("user-1")
        assert entry.access_count == 3
        assert entry.last_accessed == clock.now

        stats = await manager.get_cache_stats()
        assert stats["hit_rate"] == pytest.approx(1 / 3)
        assert stats["oldest_access"] == stats["newest_access"] == clock.now

    async def test_miss_for_untracked_key(self, make_manager):
        assert await make_manager().get("never-added") is None
