import asyncio
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Optional

from pricing_engine.core.cache import PriceCache
from pricing_engine.core.dedup import RequestDeduplicator
from pricing_engine.core.rate_limiter import ActorRateLimiter
from pricing_engine.errors import (
    InvalidRequest,
    LookupFailure,
    NotFound,
    RateLimited,
    UnavailableReason,
    UpstreamTimeout,
    reason_for,
)
from pricing_engine.features.fetchers import RetailerLookupClient
from pricing_engine.models import (
    AggregationRequest,
    CatalogItem,
    Freshness,
    PriceResult,
    Priced,
    Quote,
    Stale,
    Unavailable,
)
from pricing_engine.utils.logging_config import get_logger

logger = get_logger(__name__)

LOOKUP_OPERATION = "price_lookup"

CacheKey = tuple[str, str]
QuoteSink = Callable[[Quote], Any]
ListingCheck = Callable[[CatalogItem, str], bool]


@dataclass
class _Batch:
    """Per-call bookkeeping for one price_all invocation"""

    cached: dict[CacheKey, Quote] = field(default_factory=dict)
    stale: dict[CacheKey, Quote] = field(default_factory=dict)
    failed: dict[CacheKey, UnavailableReason] = field(default_factory=dict)
    to_fetch: list[CacheKey] = field(default_factory=list)
    to_refresh: list[CacheKey] = field(default_factory=list)
    awaited: dict[CacheKey, asyncio.Future[Quote]] = field(default_factory=dict)
    refreshing: dict[CacheKey, asyncio.Future[Quote]] = field(default_factory=dict)


class AggregationCoordinator:
    """Prices a batch of items across retailers within one global deadline

    Fresh cache hits are answered immediately. Stale hits are answered from
    the cache while a refresh runs in the background. Misses fan out to the
    lookup client, deduplicated per (item, retailer) and capped per
    retailer. Whatever has not finished at the deadline falls back to a
    stale quote or is reported unavailable; late lookups still land in the
    cache.
    """

    def __init__(
        self,
        client: RetailerLookupClient,
        cache: PriceCache,
        dedup: RequestDeduplicator,
        rate_limiter: ActorRateLimiter,
        catalog: dict[str, CatalogItem],
        retailers: list[str],
        deadline: float = 10,
        lookup_timeout: float = 8,
        per_retailer_concurrency: int = 5,
        quote_sink: Optional[QuoteSink] = None,
        has_listing: Optional[ListingCheck] = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.dedup = dedup
        self.rate_limiter = rate_limiter
        self.catalog = catalog
        self.retailers = list(retailers)
        self.deadline = deadline
        self.lookup_timeout = lookup_timeout
        self.per_retailer_concurrency = per_retailer_concurrency
        self.quote_sink = quote_sink
        self.has_listing = has_listing or (lambda item, retailer_id: True)
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._tasks: set[asyncio.Task] = set()

    async def price_all(self, request: AggregationRequest) -> dict[str, PriceResult]:
        retailers = request.retailers or self.retailers
        if not retailers:
            raise InvalidRequest("no retailers to price against")
        # A request may shorten the configured deadline, never extend it
        deadline = min(request.deadline or self.deadline, self.deadline)
        log = logger.with_context(actor_id=request.actor_id, items=len(request.items))

        started = time.monotonic()
        batch = _Batch()
        await self._classify(request, retailers, batch)
        self._schedule(request.actor_id, batch)

        if batch.awaited:
            _, pending = await asyncio.wait(batch.awaited.values(), timeout=deadline)
            if pending:
                log.info(f"{len(pending)} lookups still pending at {deadline}s deadline")

        results = {
            item_id: self._select(item_id, retailers, batch) for item_id in request.items
        }
        log.debug(
            f"Priced {len(results)} items in {time.monotonic() - started:.2f}s "
            f"({len(batch.cached)} cached, {len(batch.awaited)} looked up)"
        )
        return results

    async def _classify(
        self, request: AggregationRequest, retailers: list[str], batch: _Batch
    ) -> None:
        for item_id in request.items:
            item = self.catalog.get(item_id)
            for retailer_id in retailers:
                key = (item_id, retailer_id)
                if item is None or not self.has_listing(item, retailer_id):
                    batch.failed[key] = "not_found"
                    continue

                quote, freshness = await self.cache.get(item_id, retailer_id)
                if freshness is Freshness.FRESH and quote is not None:
                    batch.cached[key] = quote
                elif freshness is Freshness.STALE and quote is not None:
                    batch.stale[key] = quote
                    batch.to_refresh.append(key)
                else:
                    batch.to_fetch.append(key)

    def _schedule(self, actor_id: str, batch: _Batch) -> None:
        for keys, futures in (
            (batch.to_fetch, batch.awaited),
            (batch.to_refresh, batch.refreshing),
        ):
            for item_id, retailer_id in keys:
                futures[(item_id, retailer_id)] = self._dispatch(
                    actor_id, self.catalog[item_id], retailer_id
                )

    def _dispatch(
        self, actor_id: str, item: CatalogItem, retailer_id: str
    ) -> asyncio.Future[Quote]:
        is_owner, future = self.dedup.acquire_or_join(item.item_id, retailer_id)
        if is_owner:
            self._spawn(self._run_lookup(actor_id, item, retailer_id))
        return future

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _semaphore_for(self, retailer_id: str) -> asyncio.Semaphore:
        if retailer_id not in self._semaphores:
            self._semaphores[retailer_id] = asyncio.Semaphore(self.per_retailer_concurrency)
        return self._semaphores[retailer_id]

    async def _run_lookup(self, actor_id: str, item: CatalogItem, retailer_id: str) -> None:
        """Owner side of an in-flight key: rate check, lookup, cache write, resolve"""
        item_id = item.item_id
        try:
            if not await self.rate_limiter.allow(actor_id, LOOKUP_OPERATION):
                raise RateLimited(f"{actor_id} exceeded {LOOKUP_OPERATION} quota")

            async with self._semaphore_for(retailer_id):
                try:
                    quote = await asyncio.wait_for(
                        self.client.lookup(item, retailer_id, self.lookup_timeout),
                        timeout=self.lookup_timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise UpstreamTimeout(
                        f"{retailer_id} lookup for {item_id} exceeded {self.lookup_timeout}s"
                    ) from e

            if quote.price is None:
                raise NotFound(f"{retailer_id} returned no price for {item_id}")
            await self.cache.put(item_id, retailer_id, quote)
            self._hand_off(quote)
        except asyncio.CancelledError:
            self.dedup.fail(item_id, retailer_id, UpstreamTimeout("lookup cancelled"))
            raise
        except Exception as e:
            if not isinstance(e, (RateLimited, NotFound, UpstreamTimeout)):
                logger.with_context(item_id=item_id, retailer_id=retailer_id).warning(
                    f"Lookup failed for {item_id} at {retailer_id}: {str(e)}",
                    exc_info=not isinstance(e, LookupFailure),
                )
            self.dedup.fail(item_id, retailer_id, e)
        else:
            self.dedup.resolve(item_id, retailer_id, quote)

    def _hand_off(self, quote: Quote) -> None:
        if self.quote_sink is None:
            return
        try:
            result = self.quote_sink(quote)
            if isinstance(result, Awaitable):
                self._spawn(_await_quietly(result))
        except Exception as e:
            logger.error(f"Quote sink rejected {quote.key}: {str(e)}")

    def _outcome(self, key: CacheKey, batch: _Batch) -> PriceResult:
        """Result for one (item, retailer) pair as of now"""
        if key in batch.failed:
            return Unavailable(reason=batch.failed[key])
        if key in batch.cached:
            return _priced(batch.cached[key], "cached")

        future = batch.awaited.get(key, batch.refreshing.get(key))
        if future is not None and future.done() and not future.cancelled():
            if future.exception() is None:
                return _priced(future.result(), "live")
            reason = reason_for(future.exception())  # type: ignore[arg-type]
        else:
            reason = "timeout"

        if (stale := batch.stale.get(key)) is not None:
            return Stale(
                price=stale.price, currency=stale.currency, retailer_id=stale.retailer_id
            )
        return Unavailable(reason=reason)

    def _select(self, item_id: str, retailers: list[str], batch: _Batch) -> PriceResult:
        """Lowest price wins; ties go to the earlier retailer"""
        outcomes = [self._outcome((item_id, retailer_id), batch) for retailer_id in retailers]
        candidates = [
            (rank, outcome)
            for rank, outcome in enumerate(outcomes)
            if isinstance(outcome, (Priced, Stale))
        ]
        if not candidates:
            # Prefer a retailer that was actually tried over a missing listing
            tried = [
                o for o in outcomes if isinstance(o, Unavailable) and o.reason != "not_found"
            ]
            return tried[0] if tried else outcomes[0]

        # Amounts in different currencies are not comparable
        currency = candidates[0][1].currency
        comparable = [(rank, c) for rank, c in candidates if c.currency == currency]
        _, best = min(comparable, key=lambda pair: (pair[1].price, pair[0]))
        return best

    async def aclose(self) -> None:
        """Cancel lookups still running in the background"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def pending_tasks(self) -> int:
        return len(self._tasks)


def _priced(quote: Quote, source: str) -> Priced:
    return Priced(
        price=quote.price,
        currency=quote.currency,
        source=source,
        retailer_id=quote.retailer_id,
    )


async def _await_quietly(awaitable: Awaitable[Any]) -> None:
    try:
        await awaitable
    except Exception as e:
        logger.error(f"Quote sink failed: {str(e)}")
