# fetchers.py
import asyncio
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol, Unpack

from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout
from aiohttp.client import _RequestOptions
from bs4 import BeautifulSoup, Tag

from pricing_engine.core.rate_limiter import RetailerRateLimiter
from pricing_engine.errors import LookupFailure, NotFound, UpstreamError, UpstreamTimeout
from pricing_engine.models import ApiSite, CatalogItem, Quote, RetailerSite, ScrapeSite
from pricing_engine.utils.logging_config import get_logger

logger = get_logger(__name__)
price_regex = re.compile(r"[^\d.,]")
asin_regex = re.compile(r"/(?:dp|gp/product)/([A-Z0-9]{10})")
walmart_id_regex = re.compile(r"/ip/(?:[^/]+/)?(\d+)")

RAINFOREST_API_URL = "https://api.rainforestapi.com/request"
SERPAPI_URL = "https://serpapi.com/search.json"


class RetailerLookupClient(Protocol):
    """Given an item and a retailer, return a quote or raise a LookupFailure"""

    async def lookup(
        self, item: CatalogItem, retailer_id: str, timeout: float
    ) -> Quote: ...


def parse_price(raw: Any) -> Optional[Decimal]:  # noqa: ANN401
    """Parse "$1,299.99", "12,50 zł", 10.5 or {"value": ...} into a Decimal"""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, dict):
        return parse_price(raw.get("value", raw.get("amount")))
    if isinstance(raw, (int, float, Decimal)):
        return Decimal(str(raw)) if raw >= 0 else None

    price_text = price_regex.sub("", str(raw).replace(" ", ""))
    if not price_text:
        return None

    # The last separator is the decimal point, unless it is a comma
    # grouping thousands as in "$1,299"
    last = max(price_text.rfind("."), price_text.rfind(","))
    integer_part, decimal_part = price_text, ""
    if last >= 0:
        tail = price_text[last + 1 :]
        groups_thousands = (
            price_text[last] == "," and len(tail) == 3 and "." not in price_text
        )
        if not groups_thousands:
            integer_part, decimal_part = price_text[:last], tail
    integer_part = integer_part.replace(".", "").replace(",", "") or "0"
    try:
        return Decimal(f"{integer_part}.{decimal_part}" if decimal_part else integer_part)
    except InvalidOperation:
        return None


class BaseFetcher:
    # Shared across fetchers so pacing is per retailer, not per instance
    _rate_limiter: Optional[RetailerRateLimiter] = None

    @classmethod
    def get_rate_limiter(cls) -> RetailerRateLimiter:
        if BaseFetcher._rate_limiter is None:
            BaseFetcher._rate_limiter = RetailerRateLimiter()
        return BaseFetcher._rate_limiter

    @classmethod
    def set_rate_limiter(cls, rate_limiter: RetailerRateLimiter) -> None:
        BaseFetcher._rate_limiter = rate_limiter

    def __init__(self, session: ClientSession, site: RetailerSite) -> None:
        self.session = session
        self.site = site
        self.retries = 3
        self.backoff_base = 2
        self.rate_limiter = self.get_rate_limiter()

    async def fetch(self, item: CatalogItem, timeout: float) -> Quote:
        raise NotImplementedError

    def product_url(self, item: CatalogItem) -> str:
        url = item.url_for(self.site)
        if url is None:
            raise NotFound(f"{item.item_id} has no {self.site.retailer_id} listing")
        return url

    async def _request_with_retry(
        self, url: str, timeout: float, **kwargs: Unpack[_RequestOptions]
    ) -> ClientResponse:
        retailer_id = self.site.retailer_id
        last_timed_out = False

        for attempt in range(self.retries):
            await self.rate_limiter.acquire(retailer_id)

            success = False
            try:
                response = await self.session.get(
                    url, timeout=ClientTimeout(total=timeout), **kwargs
                )
                success = 200 <= response.status < 300
                if success:
                    return response

                if response.status == 404:
                    response.release()
                    raise NotFound(f"{url} returned 404")
                if response.status == 429:
                    logger.warning(f"Rate limited by {retailer_id}")

                last_timed_out = False
                await self._handle_error_response(response, attempt)
            except LookupFailure:
                raise
            except (asyncio.TimeoutError, ClientError) as e:
                last_timed_out = isinstance(e, asyncio.TimeoutError)
                await self._handle_request_error(e, attempt, url)
            finally:
                self.rate_limiter.update_rate(retailer_id, success)

        if last_timed_out:
            raise UpstreamTimeout(f"Timed out after {self.retries} attempts for {url}")
        raise UpstreamError(f"Failed after {self.retries} retries for {url}")

    async def _handle_error_response(
        self, response: ClientResponse, attempt: int
    ) -> None:
        if attempt == self.retries - 1:
            error_text = await response.text()
            raise UpstreamError(
                f"HTTP {response.status}: {error_text[:200]}", status=response.status
            )
        response.release()
        await asyncio.sleep(self.backoff_base**attempt)

    async def _handle_request_error(
        self, error: Exception, attempt: int, url: str
    ) -> None:
        if isinstance(error, asyncio.TimeoutError):
            logger.warning(f"Attempt {attempt + 1} got timed out for {url}")
            if attempt == self.retries - 1:
                raise UpstreamTimeout(f"Request timed out: {url}") from error
        else:
            logger.warning(f"Attempt {attempt + 1} failed for {url}: {str(error)}")
            if attempt == self.retries - 1:
                raise UpstreamError(f"Request failed: {str(error)}") from error
        await asyncio.sleep(self.backoff_base**attempt)

    def _quote(self, item: CatalogItem, price: Decimal, currency: Optional[str]) -> Quote:
        return Quote(
            item_id=item.item_id,
            retailer_id=self.site.retailer_id,
            price=price,
            currency=currency or self.site.currency,
        )


class ApiFetcher(BaseFetcher):
    def __init__(self, session: ClientSession, site: ApiSite) -> None:
        super().__init__(session, site)
        self.api_key = site.env_variables.api_key

    async def _get_json(self, url: str, params: dict[str, str], timeout: float) -> dict:
        response = await self._request_with_retry(url, timeout, params=params)
        try:
            return await response.json(content_type=None)
        except ValueError as e:
            raise UpstreamError(f"Invalid JSON from {self.site.retailer_id}") from e


class RainforestFetcher(ApiFetcher):
    """Amazon prices through the Rainforest product API"""

    async def fetch(self, item: CatalogItem, timeout: float) -> Quote:
        url = self.product_url(item)
        if not (match := asin_regex.search(url)):
            raise NotFound(f"No ASIN in {url}")

        data = await self._get_json(
            RAINFOREST_API_URL,
            {
                "api_key": self.api_key,
                "type": "product",
                "amazon_domain": "amazon.com",
                "asin": match.group(1),
            },
            timeout,
        )
        product = data.get("product") or {}
        price_info = (product.get("buybox_winner") or {}).get("price") or product.get(
            "price"
        )
        price = parse_price(price_info)
        if price is None:
            raise NotFound(f"No price for {match.group(1)} in Rainforest response")

        currency = price_info.get("currency") if isinstance(price_info, dict) else None
        return self._quote(item, price, currency)


class SerpApiWalmartFetcher(ApiFetcher):
    """Walmart prices through SerpAPI's walmart_product engine"""

    async def fetch(self, item: CatalogItem, timeout: float) -> Quote:
        url = self.product_url(item)
        if not (match := walmart_id_regex.search(url)):
            raise NotFound(f"No Walmart product id in {url}")

        data = await self._get_json(
            SERPAPI_URL,
            {
                "api_key": self.api_key,
                "engine": "walmart_product",
                "product_id": match.group(1),
                "device": "desktop",
            },
            timeout,
        )
        if error := data.get("error"):
            raise UpstreamError(f"SerpAPI error: {error}")

        product = data.get("product_result") or {}
        price_map = product.get("price_map") or {}
        offer = product.get("primary_offer") or {}
        price = parse_price(price_map.get("price", offer.get("offer_price")))
        if price is None:
            raise NotFound(f"No price for Walmart product {match.group(1)}")

        return self._quote(item, price, price_map.get("currency") or offer.get("currency"))


class ScrapeFetcher(BaseFetcher):
    """Reads the price off a product page using configured CSS selectors"""

    def __init__(self, session: ClientSession, site: ScrapeSite) -> None:
        super().__init__(session, site)
        self.site: ScrapeSite = site
        self.selectors = site.selectors

    async def fetch(self, item: CatalogItem, timeout: float) -> Quote:
        url = self.product_url(item)
        response = await self._request_with_retry(url, timeout)
        html = await response.text()
        price = self._parse_html(html, url)
        if price is None:
            raise NotFound(f"No valid price found in HTML at {url}")
        return self._quote(item, price, None)

    def _parse_html(self, html: str, url: str) -> Optional[Decimal]:
        soup = BeautifulSoup(html, "lxml")

        # A sale price beats the list price when both are marked up
        for price_type in ("sale_price", "price"):
            if selector := self.selectors.get(price_type):
                if price := self._extract_price(soup.select(selector), url, price_type):
                    return price
        return None

    def _extract_price(self, elements: list, url: str, price_type: str) -> Optional[Decimal]:
        prices = []
        for el in elements:
            if self._should_skip_element(el):
                continue
            price = parse_price(el.get_text(strip=True))
            if price is not None:
                prices.append(price)

        if not prices:
            logger.debug(f"No valid {price_type} found at {url}")
            return None

        if len(set(prices)) > 1:
            logger.warning(f"Multiple prices found: {prices} at {url} ({price_type})")

        return min(prices)

    def _should_skip_element(self, element: Tag) -> bool:
        if not self.site.site_rules:
            return False

        element_text = element.get_text(strip=True)
        for term, should_include in self.site.site_rules.text_contains.items():
            if (term in element_text) != should_include:
                return True

        for selector, should_skip in self.site.site_rules.element_selector.items():
            if should_skip and element.find(class_=selector) is not None:
                return True

        return False


def build_fetcher(session: ClientSession, site: ApiSite | ScrapeSite) -> BaseFetcher:
    if isinstance(site, ScrapeSite):
        return ScrapeFetcher(session, site)
    if site.provider == "rainforest":
        return RainforestFetcher(session, site)
    return SerpApiWalmartFetcher(session, site)


class RetailerLookupRouter:
    """RetailerLookupClient that dispatches to one fetcher per retailer"""

    def __init__(self, fetchers: dict[str, BaseFetcher]) -> None:
        self.fetchers = fetchers

    @classmethod
    def from_sites(
        cls, session: ClientSession, sites: list[ApiSite | ScrapeSite]
    ) -> "RetailerLookupRouter":
        return cls({site.retailer_id: build_fetcher(session, site) for site in sites})

    async def lookup(self, item: CatalogItem, retailer_id: str, timeout: float) -> Quote:
        if not (fetcher := self.fetchers.get(retailer_id)):
            raise NotFound(f"No fetcher configured for {retailer_id}")
        return await fetcher.fetch(item, timeout)
