import asyncio
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.exc import OperationalError

from phimcache.models.cache_entry import CacheEntry
from phimcache.services.cache import DurableTier, MemoryTier, RedisTier, TieredCache


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeRedis:
    """Minimal async stand-in for the two redis commands the tier uses."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value


def test_set_then_get_hits_fastest_tier(session_factory):
    cache = TieredCache([MemoryTier(), RedisTier(FakeRedis()), DurableTier(session_factory)])

    async def run():
        await cache.set("k", {"v": 1})
        return await cache.get("k")

    hit = asyncio.run(run())

    assert hit.value == {"v": 1}
    assert hit.tier == "memory"
    assert hit.level == 1


def test_set_writes_durable_tier_before_returning(session_factory):
    cache = TieredCache([MemoryTier(), DurableTier(session_factory)], write_behind=False)

    assert asyncio.run(cache.set("k", [1, 2])) is True

    db = session_factory()
    try:
        assert db.get(CacheEntry, "k") is not None
    finally:
        db.close()


def test_durable_hit_backfills_faster_tiers(session_factory):
    memory = MemoryTier()
    redis_tier = RedisTier(FakeRedis())
    durable = DurableTier(session_factory)
    asyncio.run(durable.set("k", {"v": 2}, 60))
    cache = TieredCache([memory, redis_tier, durable])

    async def run():
        first = await cache.get("k")
        second = await cache.get("k")
        return first, second

    first, second = asyncio.run(run())

    assert first.tier == "durable"
    assert first.level == 3
    assert second.tier == "memory"
    assert asyncio.run(redis_tier.get("k")) == {"v": 2}
    stats = cache.stats()
    assert stats.hits == {"memory": 1, "redis": 0, "durable": 1}


def test_expired_memory_entry_is_ignored():
    clock = FakeClock()
    memory = MemoryTier(ttl=10, clock=clock)
    cache = TieredCache([memory])

    asyncio.run(cache.set("k", "v"))
    clock.now += 11

    assert asyncio.run(cache.get("k")) is None
    assert cache.stats().misses == 1


def test_per_tier_ttls_can_be_overridden():
    clock = FakeClock()
    memory = MemoryTier(ttl=10, clock=clock)
    cache = TieredCache([memory])

    asyncio.run(cache.set("k", "v", ttls={"memory": 100}))
    clock.now += 50

    assert asyncio.run(cache.get("k")).value == "v"


def test_unavailable_redis_is_skipped(session_factory):
    broken = MagicMock()
    broken.get = AsyncMock(side_effect=ConnectionError("redis down"))
    broken.setex = AsyncMock(side_effect=ConnectionError("redis down"))
    cache = TieredCache([MemoryTier(), RedisTier(broken), DurableTier(session_factory)])

    async def run():
        assert await cache.set("k", "v") is True
        fresh = TieredCache([MemoryTier(), RedisTier(broken), DurableTier(session_factory)])
        return await fresh.get("k"), fresh

    hit, fresh = asyncio.run(run())

    assert hit.tier == "durable"
    assert cache.stats().degraded["redis"] == 1
    assert fresh.stats().degraded["redis"] >= 1


def test_durable_write_retries_operational_errors(monkeypatch):
    attempts = []
    session = MagicMock()

    def commit():
        attempts.append(1)
        if len(attempts) < 3:
            raise OperationalError("INSERT", {}, Exception("database is locked"))

    session.commit.side_effect = commit
    tier = DurableTier(lambda: session)
    monkeypatch.setattr(DurableTier._write.retry, "sleep", lambda seconds: None)

    asyncio.run(tier.set("k", "v", 60))

    assert len(attempts) == 3


def test_durable_retry_backoff_does_not_block_the_event_loop():
    attempts = []
    session = MagicMock()

    def commit():
        attempts.append(1)
        if len(attempts) < 3:
            raise OperationalError("INSERT", {}, Exception("database is locked"))

    session.commit.side_effect = commit
    cache = TieredCache([MemoryTier(), DurableTier(lambda: session)])

    async def run():
        ticks = []
        done = asyncio.Event()

        async def ticker():
            while not done.is_set():
                ticks.append(time.monotonic())
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        await cache.set("k", "v")
        done.set()
        await task
        return ticks

    ticks = asyncio.run(run())

    gaps = [b - a for a, b in zip(ticks, ticks[1:])]
    assert len(attempts) == 3
    # two backoff waits of at least 0.2s each happened while the loop kept ticking
    assert len(ticks) > 20
    assert max(gaps) < 0.2


def test_write_behind_persists_after_flush(session_factory):
    cache = TieredCache([MemoryTier(), DurableTier(session_factory)], write_behind=True)

    async def run():
        await cache.set("k", "v")
        await cache.flush()

    asyncio.run(run())

    db = session_factory()
    try:
        assert db.get(CacheEntry, "k") is not None
    finally:
        db.close()


def test_durable_entries_use_naive_utc_timestamps(session_factory):
    asyncio.run(DurableTier(session_factory).set("k", "v", 60))

    db = session_factory()
    try:
        entry = db.get(CacheEntry, "k")
    finally:
        db.close()

    now = datetime.now(timezone.utc).replace(tzinfo=None)
    assert entry.updated_at.tzinfo is None
    assert abs((entry.updated_at - now).total_seconds()) < 5
