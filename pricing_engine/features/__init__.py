from .fetchers import (
    RainforestFetcher,
    RetailerLookupClient,
    RetailerLookupRouter,
    ScrapeFetcher,
    SerpApiWalmartFetcher,
)

__all__ = [
    "RainforestFetcher",
    "RetailerLookupClient",
    "RetailerLookupRouter",
    "ScrapeFetcher",
    "SerpApiWalmartFetcher",
]
