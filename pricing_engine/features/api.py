# api.py
from typing import Optional

from aiohttp import web

from pricing_engine.engine import PricingEngine
from pricing_engine.errors import InvalidRequest
from pricing_engine.models import AggregationRequest
from pricing_engine.utils.logging_config import get_logger

logger = get_logger(__name__)

ENGINE_KEY = web.AppKey("engine", PricingEngine)
ACTOR_HEADER = "X-Actor-Id"


def _split_param(request: web.Request, name: str) -> list[str]:
    """Accept both ?items=a&items=b and ?items=a,b"""
    values: list[str] = []
    for raw in request.query.getall(name, []):
        values.extend(part for part in raw.split(",") if part.strip())
    return values


def _deadline_param(request: web.Request) -> Optional[float]:
    raw = request.query.get("deadline")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise InvalidRequest(f"deadline must be a number, got {raw!r}") from e


async def get_prices(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    actor_id = request.headers.get(ACTOR_HEADER) or request.remote or "anonymous"

    try:
        aggregation = AggregationRequest.build(
            items=_split_param(request, "items"),
            retailers=_split_param(request, "retailers"),
            deadline=_deadline_param(request),
            actor_id=actor_id,
        )
        results = await engine.price_all(aggregation)
    except InvalidRequest as e:
        logger.info(f"Rejected price request from {actor_id}: {str(e)}")
        return web.json_response({"error": str(e)}, status=400)

    return web.json_response(
        {item_id: result.to_response() for item_id, result in results.items()}
    )


async def get_health(request: web.Request) -> web.Response:
    return web.json_response(request.app[ENGINE_KEY].stats())


def create_app(engine: PricingEngine, manage_lifecycle: bool = False) -> web.Application:
    """Build the web app; with manage_lifecycle the app starts/stops the engine"""
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_get("/prices", get_prices)
    app.router.add_get("/health", get_health)

    if manage_lifecycle:

        async def engine_ctx(app: web.Application):  # noqa: ANN202
            await app[ENGINE_KEY].start()
            yield
            await app[ENGINE_KEY].stop()

        app.cleanup_ctx.append(engine_ctx)

    return app
