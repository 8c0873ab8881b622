import time
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from aiohttp import test_utils

from pricing_engine.engine import PricingEngine
from pricing_engine.features.api import ACTOR_HEADER, create_app
from pricing_engine.models import CatalogFile
from pricing_engine.settings import EngineSettings
from tests.conftest import SAMPLE_PRICES, FakeLookupClient


@pytest_asyncio.fixture
async def engine(sample_catalog: CatalogFile) -> AsyncGenerator[PricingEngine]:
    pricing_engine = PricingEngine(
        sample_catalog, EngineSettings(), client=FakeLookupClient(SAMPLE_PRICES)
    )
    await pricing_engine.start()
    yield pricing_engine
    await pricing_engine.stop()


@pytest_asyncio.fixture
async def api_client(engine: PricingEngine) -> AsyncGenerator[test_utils.TestClient]:
    async with test_utils.TestClient(test_utils.TestServer(create_app(engine))) as client:
        yield client


@pytest.mark.asyncio
async def test_get_prices(api_client: test_utils.TestClient) -> None:
    response = await api_client.get("/prices", params={"items": "diapers-size-3"})

    assert response.status == 200
    assert await response.json() == {
        "diapers-size-3": {
            "price": "23.99",
            "currency": "USD",
            "source": "live",
            "retailer": "target",
        }
    }


@pytest.mark.asyncio
async def test_items_accept_commas_and_repeats(
    api_client: test_utils.TestClient,
) -> None:
    response = await api_client.get(
        "/prices?items=diapers-size-3,infant-formula&items=nappies"
    )

    body = await response.json()
    assert list(body) == ["diapers-size-3", "infant-formula", "nappies"]
    assert body["infant-formula"]["retailer"] == "walmart"
    assert body["nappies"] == {"unavailable": "not_found"}


@pytest.mark.asyncio
async def test_second_request_is_cached(api_client: test_utils.TestClient) -> None:
    await api_client.get("/prices", params={"items": "wipes"})
    response = await api_client.get("/prices", params={"items": "wipes"})

    body = await response.json()
    assert body["wipes"]["source"] == "cached"
    assert body["wipes"]["price"] == "5.97"


@pytest.mark.asyncio
async def test_retailer_filter(api_client: test_utils.TestClient) -> None:
    response = await api_client.get(
        "/prices", params={"items": "diapers-size-3", "retailers": "walmart,amazon"}
    )

    body = await response.json()
    assert body["diapers-size-3"]["retailer"] == "amazon"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "query",
    [
        "/prices",
        "/prices?items=",
        "/prices?items=wipes&deadline=soon",
        "/prices?items=wipes&deadline=0",
    ],
)
async def test_invalid_requests_are_rejected(
    api_client: test_utils.TestClient, query: str
) -> None:
    response = await api_client.get(query)

    assert response.status == 400
    assert "error" in await response.json()


@pytest.mark.asyncio
async def test_deadline_param_cannot_exceed_configured_deadline(
    sample_catalog: CatalogFile,
) -> None:
    engine = PricingEngine(
        sample_catalog, EngineSettings(deadline=0.2), client=FakeLookupClient(default=None)
    )
    app = create_app(engine, manage_lifecycle=True)

    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        started = time.monotonic()
        response = await client.get("/prices", params={"items": "wipes", "deadline": "30"})
        elapsed = time.monotonic() - started

        assert response.status == 200
        assert await response.json() == {"wipes": {"unavailable": "timeout"}}
    assert elapsed < 1


@pytest.mark.asyncio
async def test_actor_header_scopes_rate_limit(sample_catalog: CatalogFile) -> None:
    engine = PricingEngine(
        sample_catalog,
        EngineSettings(lookup_quota=1),
        client=FakeLookupClient(SAMPLE_PRICES),
    )
    app = create_app(engine, manage_lifecycle=True)

    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        query = {"items": "diapers-size-3,infant-formula", "retailers": "amazon"}
        first = await (
            await client.get("/prices", params=query, headers={ACTOR_HEADER: "user-1"})
        ).json()
        second = await (
            await client.get("/prices", params=query, headers={ACTOR_HEADER: "user-2"})
        ).json()

    assert first["diapers-size-3"]["source"] == "live"
    assert first["infant-formula"] == {"unavailable": "rate_limited"}
    # user-2 gets the cached price and its own quota for the miss
    assert second["diapers-size-3"]["source"] == "cached"
    assert second["infant-formula"]["source"] == "live"


@pytest.mark.asyncio
async def test_health(api_client: test_utils.TestClient) -> None:
    await api_client.get("/prices", params={"items": "wipes"})

    response = await api_client.get("/health")

    assert response.status == 200
    stats = await response.json()
    assert stats["cache"]["size"] == 1
    assert stats["in_flight"] == 0
