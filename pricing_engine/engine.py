from typing import Optional

from aiohttp import ClientSession, ClientTimeout, TCPConnector

from pricing_engine.core.cache import PriceCache
from pricing_engine.core.coordinator import LOOKUP_OPERATION, AggregationCoordinator
from pricing_engine.core.database import ConnectionPool, QuoteStore
from pricing_engine.core.dedup import RequestDeduplicator
from pricing_engine.core.rate_limiter import ActorRateLimiter, RetailerRateLimiter
from pricing_engine.features.fetchers import (
    BaseFetcher,
    RetailerLookupClient,
    RetailerLookupRouter,
)
from pricing_engine.models import (
    AggregationRequest,
    CatalogFile,
    CatalogItem,
    PriceResult,
)
from pricing_engine.settings import EngineSettings
from pricing_engine.utils.logging_config import get_logger

logger = get_logger(__name__)

HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",  # noqa: E501
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
    "Cache-Control": "no-cache",
}


class PricingEngine:
    """Owns the shared cache, limiter and in-flight table plus their sweeps

    Use as an async context manager, or call start()/stop() around the
    process lifetime.
    """

    def __init__(
        self,
        catalog: CatalogFile,
        settings: Optional[EngineSettings] = None,
        client: Optional[RetailerLookupClient] = None,
    ) -> None:
        self.catalog = catalog
        self.settings = settings or EngineSettings()
        self._client = client
        self._session: Optional[ClientSession] = None
        self._sites = catalog.site_map()

        self.cache = PriceCache(
            ttl=self.settings.cache_ttl,
            grace=self.settings.cache_grace,
            sweep_interval=self.settings.sweep_interval,
            shards=self.settings.cache_shards,
        )
        self.dedup = RequestDeduplicator()
        self.rate_limiter = ActorRateLimiter(
            max_count=self.settings.rate_limit_max,
            window=self.settings.rate_limit_window,
            overrides={LOOKUP_OPERATION: self.settings.lookup_quota},
        )
        self.store = (
            QuoteStore(self.settings.database_url) if self.settings.database_url else None
        )
        self.coordinator: Optional[AggregationCoordinator] = None

    def has_listing(self, item: CatalogItem, retailer_id: str) -> bool:
        site = self._sites.get(retailer_id)
        return site is not None and item.url_for(site) is not None

    async def start(self) -> None:
        if self._client is None:
            BaseFetcher.set_rate_limiter(
                RetailerRateLimiter(config_path=self.settings.rate_limits_path)
            )
            self._session = ClientSession(
                connector=TCPConnector(limit=100, limit_per_host=20, ttl_dns_cache=300),
                headers=HEADERS,
                timeout=ClientTimeout(total=30, sock_connect=15),
                trust_env=True,
            )
            self._client = RetailerLookupRouter.from_sites(
                self._session, self.catalog.sites
            )

        if self.store is not None:
            await self.store.initialize()
            await self.store.warm_cache(self.cache)
            self.store.start()

        self.coordinator = AggregationCoordinator(
            client=self._client,
            cache=self.cache,
            dedup=self.dedup,
            rate_limiter=self.rate_limiter,
            catalog=self.catalog.item_map(),
            retailers=[site.retailer_id for site in self.catalog.sites],
            deadline=self.settings.deadline,
            lookup_timeout=self.settings.lookup_timeout,
            per_retailer_concurrency=self.settings.per_retailer_concurrency,
            quote_sink=self.store.enqueue if self.store is not None else None,
            has_listing=self.has_listing,
        )
        self.cache.start()
        self.rate_limiter.start()
        logger.info(
            f"Pricing engine started for {len(self.catalog.items)} items "
            f"across {len(self.catalog.sites)} retailers"
        )

    async def stop(self) -> None:
        if self.coordinator is not None:
            await self.coordinator.aclose()
        await self.cache.stop()
        await self.rate_limiter.stop()

        if self.store is not None:
            await self.store.stop()
            await ConnectionPool.close_all()

        if self._session is not None:
            await BaseFetcher.get_rate_limiter().save_configs()
            await self._session.close()
            self._session = None
        logger.info("Pricing engine stopped")

    async def __aenter__(self) -> "PricingEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def price_all(self, request: AggregationRequest) -> dict[str, PriceResult]:
        if self.coordinator is None:
            raise RuntimeError("PricingEngine.start() has not been called")
        return await self.coordinator.price_all(request)

    def stats(self) -> dict:
        return {
            "cache": self.cache.get_stats(),
            "in_flight": self.dedup.in_flight(),
            "background_tasks": self.coordinator.pending_tasks() if self.coordinator else 0,
        }


async def price_items(
    engine: PricingEngine, item_ids: list[str], actor_id: str = "cli"
) -> dict[str, dict]:
    """Convenience wrapper returning the wire-format result map"""
    request = AggregationRequest.build(items=item_ids, actor_id=actor_id)
    results = await engine.price_all(request)
    return {item_id: result.to_response() for item_id, result in results.items()}
