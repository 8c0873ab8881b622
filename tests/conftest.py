import asyncio
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Optional, Union

import pytest

from pricing_engine.models import CatalogFile, CatalogItem, Quote

# What a fake lookup does: a price, an exception to raise, or None to hang
Behaviour = Union[Decimal, BaseException, None]


class FakeClock:
    """Manually advanced epoch clock"""

    def __init__(self, start: Optional[float] = None) -> None:
        # Whole seconds keep boundary arithmetic exact
        self.now = float(int(time.time())) if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLookupClient:
    """Records every upstream call and answers from a behaviour table"""

    def __init__(
        self,
        behaviours: Optional[dict[tuple[str, str], Behaviour]] = None,
        delay: float = 0.0,
        default: Behaviour = Decimal("9.99"),
        currency: str = "USD",
    ) -> None:
        self.behaviours = behaviours or {}
        self.delay = delay
        self.default = default
        self.currency = currency
        self.calls: list[tuple[str, str]] = []

    async def lookup(self, item: CatalogItem, retailer_id: str, timeout: float) -> Quote:
        key = (item.item_id, retailer_id)
        self.calls.append(key)
        behaviour = self.behaviours.get(key, self.default)

        if behaviour is None:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(behaviour, BaseException):
            raise behaviour

        return Quote(
            item_id=item.item_id,
            retailer_id=retailer_id,
            price=behaviour,
            currency=self.currency,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_client() -> Callable[..., FakeLookupClient]:
    return FakeLookupClient


@pytest.fixture
def catalog_items() -> dict[str, CatalogItem]:
    return {
        item_id: CatalogItem(item_id=item_id, title=f"Item {item_id}")
        for item_id in ("A", "B", "C", "D")
    }


def make_quote(
    item_id: str, retailer_id: str, price: str, currency: str = "USD"
) -> Quote:
    return Quote(
        item_id=item_id, retailer_id=retailer_id, price=Decimal(price), currency=currency
    )


@pytest.fixture
def quote_factory() -> Callable[..., Quote]:
    return make_quote


SAMPLE_CATALOG = {
    "sites": [
        {
            "retailer_id": "amazon",
            "root_domain": "amazon.com",
            "category": "api",
            "provider": "rainforest",
            "env_variables": {"api_key": "test_key"},
        },
        {
            "retailer_id": "walmart",
            "root_domain": "walmart.com",
            "category": "api",
            "provider": "serpapi",
            "env_variables": {"api_key": "test_key"},
        },
        {
            "retailer_id": "target",
            "root_domain": "target.com",
            "category": "scrape",
            "selectors": {"price": "[data-test='product-price']"},
        },
    ],
    "items": [
        {
            "item_id": "diapers-size-3",
            "urls": [
                "https://www.amazon.com/dp/B07Q4W4MNV",
                "https://www.walmart.com/ip/Pampers-Swaddlers/418712133",
                "https://www.target.com/p/pampers-swaddlers/-/A-52460434",
            ],
        },
        {
            "item_id": "infant-formula",
            "urls": [
                "https://www.amazon.com/dp/B09P4V2K3C",
                "https://www.walmart.com/ip/Similac-360/1286495453",
            ],
        },
        {
            "item_id": "wipes",
            "urls": ["https://www.walmart.com/ip/Pampers-Wipes/45543812"],
        },
    ],
}

SAMPLE_PRICES: dict[tuple[str, str], Behaviour] = {
    ("diapers-size-3", "amazon"): Decimal("24.94"),
    ("diapers-size-3", "walmart"): Decimal("24.97"),
    ("diapers-size-3", "target"): Decimal("23.99"),
    ("infant-formula", "amazon"): Decimal("39.99"),
    ("infant-formula", "walmart"): Decimal("38.47"),
    ("wipes", "walmart"): Decimal("5.97"),
}


@pytest.fixture
def sample_catalog() -> CatalogFile:
    return CatalogFile.from_dict(SAMPLE_CATALOG)
