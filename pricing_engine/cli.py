import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from aiohttp import web
from dotenv import load_dotenv

from pricing_engine.engine import PricingEngine, price_items
from pricing_engine.errors import InvalidRequest
from pricing_engine.features.api import create_app
from pricing_engine.models import CatalogFile
from pricing_engine.settings import EngineSettings
from pricing_engine.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


async def run_price(
    catalog_path: Path,
    settings: EngineSettings,
    item_ids: list[str],
    actor_id: str,
    output: Optional[Path],
) -> dict[str, dict]:
    catalog = CatalogFile.from_json(catalog_path)
    if not item_ids:
        item_ids = [item.item_id for item in catalog.items]

    async with PricingEngine(catalog, settings) as engine:
        results = await price_items(engine, item_ids, actor_id=actor_id)

    save_results(results, output or catalog_path.parent / "output.json")
    return results


def save_results(results: dict[str, dict], path: Path) -> None:
    with open(path, "w") as outfile:
        json.dump(results, outfile, indent=4, ensure_ascii=False)
    logger.info(f"Saved {len(results)} price results to {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Multi-retailer price aggregation")
    parser.add_argument("-c", "--catalog", default="data/catalog.json")
    parser.add_argument("--database-url", help="Quote history database URL")
    parser.add_argument("--deadline", type=float, help="Batch deadline in seconds")
    parser.add_argument("--log-dir", help="Directory for rotating log files")

    subparsers = parser.add_subparsers(dest="command", required=True)

    price = subparsers.add_parser("price", help="Price catalog items once")
    price.add_argument("items", nargs="*", help="Item ids (default: whole catalog)")
    price.add_argument("--actor", default="cli", help="Rate-limit actor id")
    price.add_argument("-o", "--output", type=Path, help="Where to write the JSON")

    serve = subparsers.add_parser("serve", help="Serve GET /prices over HTTP")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)

    return parser


def cli(argv: Optional[list[str]] = None) -> None:
    """Command Line Interface entry point"""
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    settings = EngineSettings.from_env(
        database_url=args.database_url, deadline=args.deadline, log_dir=args.log_dir
    )
    setup_logging(settings.log_dir)

    catalog_path = Path(args.catalog)
    if not catalog_path.exists():
        parser.error(f"Catalog file not found: {catalog_path}")

    if args.command == "serve":
        engine = PricingEngine(CatalogFile.from_json(catalog_path), settings)
        web.run_app(
            create_app(engine, manage_lifecycle=True), host=args.host, port=args.port
        )
        return

    try:
        results = asyncio.run(
            run_price(catalog_path, settings, args.items, args.actor, args.output)
        )
    except InvalidRequest as e:
        parser.error(str(e))
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    cli()
