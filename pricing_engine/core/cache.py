import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pricing_engine.models import Freshness, Quote
from pricing_engine.utils.logging_config import get_logger

logger = get_logger(__name__)

CacheKey = tuple[str, str]


@dataclass
class CacheEntry:
    quote: Quote
    ttl_expires_at: float
    stale_until: float

    def freshness(self, now: float) -> Freshness:
        if now <= self.ttl_expires_at:
            return Freshness.FRESH
        if now <= self.stale_until:
            return Freshness.STALE
        return Freshness.ABSENT


class PriceCache:
    """Quotes keyed by (item_id, retailer_id) with TTL plus a stale grace window"""

    def __init__(
        self,
        ttl: float = 600,
        grace: float = 300,
        sweep_interval: float = 60,
        shards: int = 16,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the cache

        Args:
            ttl: Seconds a quote is served as fresh after it was stored
            grace: Extra seconds past the TTL during which it may be served stale
            sweep_interval: Seconds between background eviction passes
            shards: Number of independent locks the key space is split across
            clock: Time source returning epoch seconds
        """
        if ttl <= 0 or grace < 0:
            raise ValueError("ttl must be positive and grace non-negative")
        self.ttl = ttl
        self.grace = grace
        self.sweep_interval = sweep_interval
        self.clock = clock
        self.entries: dict[CacheKey, CacheEntry] = {}
        self._locks = [asyncio.Lock() for _ in range(max(1, shards))]
        self._cleanup_task: Optional[asyncio.Task] = None

    def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        return self._locks[hash(key) % len(self._locks)]

    async def get(self, item_id: str, retailer_id: str) -> tuple[Optional[Quote], Freshness]:
        key = (item_id, retailer_id)
        entry = self.entries.get(key)
        if entry is None:
            return None, Freshness.ABSENT

        freshness = entry.freshness(self.clock())
        if freshness is Freshness.ABSENT:
            async with self._lock_for(key):
                # Double-check after acquiring lock, a put may have landed
                current = self.entries.get(key)
                if current is not None and current.freshness(self.clock()) is Freshness.ABSENT:
                    del self.entries[key]
            return None, Freshness.ABSENT

        return entry.quote.as_cached(), freshness

    async def put(self, item_id: str, retailer_id: str, quote: Quote) -> None:
        """Store a quote, resetting its TTL and grace window from now"""
        key = (item_id, retailer_id)
        if quote.key != key:
            raise ValueError(f"quote for {quote.key} stored under {key}")
        if quote.price is None:
            raise ValueError("only priced quotes can be cached")

        now = self.clock()
        ttl_expires_at = now + self.ttl
        async with self._lock_for(key):
            self.entries[key] = CacheEntry(
                quote=quote,
                ttl_expires_at=ttl_expires_at,
                stale_until=ttl_expires_at + self.grace,
            )

    async def restore(self, quote: Quote) -> bool:
        """Re-insert a persisted quote, aging it from its fetch time"""
        if quote.price is None:
            return False
        fetched = quote.fetched_at.timestamp()
        ttl_expires_at = fetched + self.ttl
        stale_until = ttl_expires_at + self.grace
        if self.clock() > stale_until:
            return False

        key = quote.key
        async with self._lock_for(key):
            current = self.entries.get(key)
            # Never clobber a newer quote with an older persisted one
            if current is not None and current.quote.fetched_at >= quote.fetched_at:
                return False
            self.entries[key] = CacheEntry(
                quote=quote, ttl_expires_at=ttl_expires_at, stale_until=stale_until
            )
        return True

    async def evict_expired(self) -> int:
        """Remove all entries past their grace window"""
        now = self.clock()
        expired_keys = [
            key for key, entry in self.entries.items() if now > entry.stale_until
        ]

        removed = 0
        for key in expired_keys:
            async with self._lock_for(key):
                entry = self.entries.get(key)
                if entry is not None and self.clock() > entry.stale_until:
                    del self.entries[key]
                    removed += 1
        if removed:
            logger.debug(f"Evicted {removed} expired price cache entries")
        return removed

    def start(self) -> None:
        """Start the background sweep if it is not already running"""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            self._cleanup_task.set_name(f"price-cache-sweep-{id(self)}")

    async def stop(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval)
                try:
                    await self.evict_expired()
                except Exception as e:
                    logger.error(f"Error in price cache sweep: {str(e)}")
        except asyncio.CancelledError:
            logger.debug("Price cache sweep cancelled")
            raise

    async def clear(self) -> None:
        for lock in self._locks:
            await lock.acquire()
        try:
            self.entries.clear()
        finally:
            for lock in self._locks:
                lock.release()

    def get_stats(self) -> dict[str, Any]:
        now = self.clock()
        fresh = sum(
            1 for entry in self.entries.values() if entry.freshness(now) is Freshness.FRESH
        )
        stale = sum(
            1 for entry in self.entries.values() if entry.freshness(now) is Freshness.STALE
        )
        return {
            "size": len(self.entries),
            "fresh": fresh,
            "stale": stale,
            "ttl": self.ttl,
            "grace": self.grace,
        }
