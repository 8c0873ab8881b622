import json
from decimal import Decimal
from pathlib import Path
from unittest import TestCase

import pytest
from pydantic import TypeAdapter, ValidationError

from pricing_engine.errors import InvalidRequest
from pricing_engine.models import (
    AggregationRequest,
    ApiSite,
    CatalogFile,
    CatalogItem,
    EnvVariables,
    PriceResult,
    Priced,
    Quote,
    ScrapeSite,
    Selectors,
    Stale,
    Unavailable,
    registered_domain,
)
from tests.conftest import SAMPLE_CATALOG


class TestQuote(TestCase):
    def test_currency_is_normalized(self) -> None:
        quote = Quote(item_id="A", retailer_id="amazon", price=Decimal("1.50"), currency=" usd ")
        self.assertEqual(quote.currency, "USD")
        self.assertEqual(quote.key, ("A", "amazon"))
        self.assertEqual(quote.source, "live")
        self.assertIsNotNone(quote.fetched_at.tzinfo)

    def test_price_requires_currency(self) -> None:
        with self.assertRaises(ValidationError):
            Quote(item_id="A", retailer_id="amazon", price=Decimal("1.50"))

    def test_negative_price_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            Quote(item_id="A", retailer_id="amazon", price=Decimal("-1"), currency="USD")

    def test_as_cached_keeps_everything_else(self) -> None:
        quote = Quote(item_id="A", retailer_id="amazon", price=Decimal("2"), currency="USD")
        cached = quote.as_cached()
        self.assertEqual(cached.source, "cached")
        self.assertEqual(cached.fetched_at, quote.fetched_at)
        self.assertEqual(quote.source, "live")

    def test_quote_is_immutable(self) -> None:
        quote = Quote(item_id="A", retailer_id="amazon", price=Decimal("2"), currency="USD")
        with self.assertRaises(ValidationError):
            quote.price = Decimal("1")  # type: ignore[misc]


class TestPriceResult(TestCase):
    def test_wire_format(self) -> None:
        priced = Priced(
            price=Decimal("12.00"), currency="USD", source="cached", retailer_id="amazon"
        )
        stale = Stale(price=Decimal("9.5"), currency="EUR", retailer_id="walmart")

        self.assertEqual(
            priced.to_response(),
            {"price": "12.00", "currency": "USD", "source": "cached", "retailer": "amazon"},
        )
        self.assertEqual(stale.to_response()["source"], "stale")
        self.assertEqual(Unavailable(reason="timeout").to_response(), {"unavailable": "timeout"})

    def test_discriminated_union(self) -> None:
        adapter = TypeAdapter(PriceResult)
        result = adapter.validate_python({"kind": "unavailable", "reason": "not_found"})
        self.assertIsInstance(result, Unavailable)

        with self.assertRaises(ValidationError):
            adapter.validate_python({"kind": "unavailable", "reason": "bored"})


class TestAggregationRequest:
    def test_items_are_deduplicated_in_order(self) -> None:
        request = AggregationRequest.build(
            items=["B", " A", "B", "", "C"], retailers=["target", "amazon", "target"]
        )

        assert request.items == ["B", "A", "C"]
        assert request.retailers == ["target", "amazon"]
        assert request.actor_id == "anonymous"
        assert request.deadline is None

    @pytest.mark.parametrize(
        "data",
        [{"items": []}, {"items": [" "]}, {"items": ["A"], "deadline": 0}, {}],
    )
    def test_invalid_requests(self, data: dict) -> None:
        with pytest.raises(InvalidRequest):
            AggregationRequest.build(**data)


class TestEnvVariables:
    def test_literal_key(self) -> None:
        assert EnvVariables(api_key="abc123").api_key == "abc123"

    def test_key_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SERPAPI_KEY", "from-env")
        assert EnvVariables(api_key="${SERPAPI_KEY}").api_key == "from-env"

    def test_missing_environment_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SERPAPI_KEY", raising=False)
        with pytest.raises(ValidationError):
            EnvVariables(api_key="${SERPAPI_KEY}")

    def test_empty_key(self) -> None:
        with pytest.raises(ValidationError):
            EnvVariables(api_key="")


class TestSites(TestCase):
    def test_root_domain_is_normalized(self) -> None:
        site = ScrapeSite(
            retailer_id="target",
            root_domain="https://www.Target.com/c/baby",
            selectors=Selectors(price=".price"),
        )
        self.assertEqual(site.root_domain, "target.com")
        self.assertEqual(site.currency, "USD")

    def test_registered_domain(self) -> None:
        self.assertEqual(registered_domain("https://shop.example.co.uk/p/1"), "example.co.uk")
        self.assertEqual(registered_domain("localhost"), "localhost")

    def test_api_site_requires_provider(self) -> None:
        with self.assertRaises(ValidationError):
            ApiSite.model_validate(
                {
                    "retailer_id": "amazon",
                    "root_domain": "amazon.com",
                    "env_variables": {"api_key": "k"},
                }
            )

    def test_url_for_site(self) -> None:
        site = ScrapeSite(
            retailer_id="target", root_domain="target.com", selectors=Selectors()
        )
        item = CatalogItem(
            item_id="wipes",
            urls=["https://www.walmart.com/ip/1", "https://www.target.com/p/-/A-1"],
        )
        self.assertEqual(item.url_for(site), "https://www.target.com/p/-/A-1")
        self.assertIsNone(CatalogItem(item_id="x").url_for(site))


class TestCatalogFile:
    def test_from_dict(self) -> None:
        catalog = CatalogFile.from_dict(SAMPLE_CATALOG)

        assert [site.retailer_id for site in catalog.sites] == ["amazon", "walmart", "target"]
        assert isinstance(catalog.site_map()["amazon"], ApiSite)
        assert isinstance(catalog.site_map()["target"], ScrapeSite)
        assert set(catalog.item_map()) == {"diapers-size-3", "infant-formula", "wipes"}

    def test_invalid_site_is_skipped(self, caplog: pytest.LogCaptureFixture) -> None:
        data = json.loads(json.dumps(SAMPLE_CATALOG))
        del data["sites"][2]["selectors"]

        catalog = CatalogFile.from_dict(data)

        assert "target" not in catalog.site_map()
        assert "Invalid site config" in caplog.text

    def test_disabled_site_and_urls_are_dropped(self) -> None:
        data = json.loads(json.dumps(SAMPLE_CATALOG))
        data["sites"][1]["disabled"] = True

        catalog = CatalogFile.from_dict(data)

        assert "walmart" not in catalog.site_map()
        assert catalog.item_map()["wipes"].urls == []
        assert all("walmart" not in url for url in catalog.item_map()["diapers-size-3"].urls)

    def test_from_json(self, tmp_path: Path) -> None:
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(SAMPLE_CATALOG), encoding="utf-8")

        catalog = CatalogFile.from_json(path)

        assert len(catalog.items) == 3
