"""
Three-tier read-through cache.

Tiers are consulted fastest first: in-process memory, shared redis, durable
database rows. A hit in a slower tier is copied back into every faster tier
with that tier's own TTL. set() writes slowest first so the durable copy
exists before the call reports success.

A tier whose backend fails raises CacheTierUnavailable; TieredCache logs it,
counts it and carries on with the remaining tiers.

Weak point: with write_behind enabled the durable write is scheduled on the
event loop and set() returns before it lands, so a crash in between loses
that entry from the durable tier.
"""
import asyncio
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from phimcache.core.config import settings
from phimcache.core.exceptions import CacheTierUnavailable
from phimcache.core.timeutil import utcnow
from phimcache.models.cache_entry import CacheEntry
from phimcache.schemas import CacheStats

logger = logging.getLogger(__name__)


@dataclass
class CachedValue:
    value: Any
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class CacheHit:
    value: Any
    tier: str
    level: int  # 1 = fastest


class MemoryTier:
    name = "memory"
    durable = False

    def __init__(self, ttl: int = None, clock: Callable[[], float] = time.time):
        self.ttl = ttl if ttl is not None else settings.CACHE_MEMORY_TTL
        self._clock = clock
        self._entries: Dict[str, CachedValue] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None or not entry.is_valid(self._clock()):
            return None
        return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = CachedValue(value=value, expires_at=self._clock() + ttl)


class RedisTier:
    name = "redis"
    durable = False

    def __init__(self, client, ttl: int = None, prefix: str = "phimcache:"):
        self.client = client
        self.ttl = ttl if ttl is not None else settings.CACHE_DISTRIBUTED_TTL
        self.prefix = prefix

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(self.prefix + key)
        except Exception as e:
            raise CacheTierUnavailable(self.name, str(e))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable redis entry {key}")
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.client.setex(self.prefix + key, ttl, json.dumps(value, default=str))
        except Exception as e:
            raise CacheTierUnavailable(self.name, str(e))


class DurableTier:
    name = "durable"
    durable = True

    def __init__(self, session_factory, ttl: int = None):
        self.session_factory = session_factory
        self.ttl = ttl if ttl is not None else settings.CACHE_DURABLE_TTL

    async def get(self, key: str) -> Optional[Any]:
        # session I/O and retry backoff run on a worker thread, off the event loop
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await asyncio.to_thread(self._write, key, json.dumps(value, default=str), ttl)
        except SQLAlchemyError as e:
            raise CacheTierUnavailable(self.name, str(e))

    def _read(self, key: str) -> Optional[Any]:
        db = self.session_factory()
        try:
            entry = db.get(CacheEntry, key)
            if entry is None or entry.expires_at <= utcnow():
                return None
            return json.loads(entry.value)
        except SQLAlchemyError as e:
            raise CacheTierUnavailable(self.name, str(e))
        finally:
            db.close()

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    def _write(self, key: str, payload: str, ttl: int) -> None:
        db = self.session_factory()
        try:
            now = utcnow()
            db.merge(CacheEntry(
                key=key,
                value=payload,
                expires_at=now + timedelta(seconds=ttl),
                updated_at=now,
            ))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()


class TieredCache:
    def __init__(self, tiers: List[Any], write_behind: bool = None):
        if not tiers:
            raise ValueError("TieredCache needs at least one tier")
        self.tiers = tiers
        self.write_behind = settings.CACHE_DURABLE_WRITE_BEHIND if write_behind is None else write_behind
        self._pending: set = set()
        self._stats = {
            "hits": {tier.name: 0 for tier in tiers},
            "misses": 0,
            "sets": 0,
            "degraded": {tier.name: 0 for tier in tiers},
        }

    def _degraded(self, tier, error: Exception) -> None:
        self._stats["degraded"][tier.name] += 1
        logger.warning(f"Cache tier {tier.name} unavailable, skipping: {error}")

    async def get(self, key: str) -> Optional[CacheHit]:
        for index, tier in enumerate(self.tiers):
            try:
                value = await tier.get(key)
            except CacheTierUnavailable as e:
                self._degraded(tier, e)
                continue
            if value is None:
                continue

            self._stats["hits"][tier.name] += 1
            logger.debug(f"Cache HIT: {key} ({tier.name})")
            for faster in self.tiers[:index]:
                try:
                    await faster.set(key, value, faster.ttl)
                except CacheTierUnavailable as e:
                    self._degraded(faster, e)
            return CacheHit(value=value, tier=tier.name, level=index + 1)

        self._stats["misses"] += 1
        logger.debug(f"Cache MISS: {key}")
        return None

    async def set(self, key: str, value: Any, ttls: Optional[Dict[str, int]] = None) -> bool:
        """Write value into every tier, slowest first. Returns False only if no tier took it."""
        ttls = ttls or {}
        written = 0
        for tier in reversed(self.tiers):
            ttl = ttls.get(tier.name, tier.ttl)
            if tier.durable and self.write_behind:
                task = asyncio.create_task(self._write_behind(tier, key, value, ttl))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
                written += 1
                continue
            try:
                await tier.set(key, value, ttl)
                written += 1
            except CacheTierUnavailable as e:
                self._degraded(tier, e)

        if written:
            self._stats["sets"] += 1
            logger.debug(f"Cache SET: {key}")
        return written > 0

    async def _write_behind(self, tier, key: str, value: Any, ttl: int) -> None:
        try:
            await tier.set(key, value, ttl)
        except CacheTierUnavailable as e:
            self._degraded(tier, e)

    async def flush(self) -> None:
        """Wait for outstanding write-behind persistence."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=dict(self._stats["hits"]),
            misses=self._stats["misses"],
            sets=self._stats["sets"],
            degraded=dict(self._stats["degraded"]),
        )


def build_cache(session_factory, redis_client=None) -> TieredCache:
    tiers: List[Any] = [MemoryTier()]
    if redis_client is not None and settings.REDIS_CACHE_ENABLED:
        tiers.append(RedisTier(redis_client))
    tiers.append(DurableTier(session_factory))
    return TieredCache(tiers)
