"""
Pricing Engine - multi-retailer price aggregation with caching
"""

from .core.cache import PriceCache
from .core.coordinator import AggregationCoordinator
from .core.dedup import RequestDeduplicator
from .core.rate_limiter import ActorRateLimiter, RetailerRateLimiter
from .engine import PricingEngine
from .models import AggregationRequest, Priced, Quote, Stale, Unavailable
from .settings import EngineSettings
from .utils.logging_config import get_logger

__all__ = [
    "ActorRateLimiter",
    "AggregationCoordinator",
    "AggregationRequest",
    "EngineSettings",
    "PriceCache",
    "Priced",
    "PricingEngine",
    "Quote",
    "RequestDeduplicator",
    "RetailerRateLimiter",
    "Stale",
    "Unavailable",
    "get_logger",
]
