# Re-export the leaf building blocks; the coordinator imports fetchers
from .cache import PriceCache
from .dedup import RequestDeduplicator
from .rate_limiter import ActorRateLimiter, RetailerRateLimiter

__all__ = ["PriceCache", "RequestDeduplicator", "ActorRateLimiter", "RetailerRateLimiter"]
