# database.py
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from databases import Database
from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    and_,
    func,
    select,
)

from pricing_engine.core.cache import PriceCache
from pricing_engine.models import Quote
from pricing_engine.utils.logging_config import get_logger

logger = get_logger(__name__)

CacheKey = tuple[str, str]


class ConnectionPool:
    """One shared Database per URL"""

    _instances: dict[str, Database] = {}
    _locks: dict[str, asyncio.Lock] = {}

    @classmethod
    async def get_connection(cls, database_url: str) -> Database:
        if database_url not in cls._locks:
            cls._locks[database_url] = asyncio.Lock()

        async with cls._locks[database_url]:
            if database_url not in cls._instances:
                db = Database(database_url)
                await db.connect()
                cls._instances[database_url] = db
                logger.info(f"Created new database connection for {database_url}")

            return cls._instances[database_url]

    @classmethod
    async def close_all(cls) -> None:
        for url, db in cls._instances.items():
            logger.info(f"Closing database connection for {url}")
            await db.disconnect()

        cls._instances.clear()
        cls._locks.clear()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class QuoteStore:
    """Quote history in SQL, used to warm the price cache across restarts

    Writes go through a queue drained by a background task so the lookup
    path never waits on the database.
    """

    def __init__(
        self, database_url: str = "sqlite:///data/quotes.db", batch_size: int = 50
    ) -> None:
        self.database_url = database_url
        self.batch_size = batch_size
        self.metadata = MetaData()
        self.quote_history = self._define_quote_history_table()
        self.db: Optional[Database] = None
        self._queue: asyncio.Queue[Quote] = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None

    def _define_quote_history_table(self) -> Table:
        return Table(
            "quote_history",
            self.metadata,
            Column("id", Integer, primary_key=True),
            Column("item_id", String(255), nullable=False),
            Column("retailer_id", String(64), nullable=False),
            Column("price", Numeric(12, 2), nullable=False),
            Column("currency", String(3), nullable=False),
            Column("fetched_at", DateTime, nullable=False),
            Index("idx_quote_key_fetched", "item_id", "retailer_id", "fetched_at"),
        )

    async def initialize(self) -> None:
        self.db = await ConnectionPool.get_connection(self.database_url)
        await self._create_tables()

    async def _create_tables(self) -> None:
        assert self.db is not None
        await self.db.execute(
            """CREATE TABLE IF NOT EXISTS quote_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id TEXT NOT NULL,
                retailer_id TEXT NOT NULL,
                price NUMERIC NOT NULL,
                currency TEXT NOT NULL,
                fetched_at DATETIME NOT NULL
            )"""
        )
        await self.db.execute(
            "CREATE INDEX IF NOT EXISTS idx_quote_key_fetched "
            "ON quote_history(item_id, retailer_id, fetched_at)"
        )

    async def _last_price(self, item_id: str, retailer_id: str) -> Optional[tuple[Decimal, str]]:
        assert self.db is not None
        query = (
            select(self.quote_history.c.price, self.quote_history.c.currency)
            .where(
                (self.quote_history.c.item_id == item_id)
                & (self.quote_history.c.retailer_id == retailer_id)
            )
            .order_by(self.quote_history.c.fetched_at.desc())
            .limit(1)
        )
        row = await self.db.fetch_one(query)
        if row is None:
            return None
        return Decimal(str(row[0])), row[1]

    async def record_quotes(self, quotes: list[Quote]) -> set[CacheKey]:
        """Insert quotes whose price moved; return the keys that changed"""
        assert self.db is not None
        changed: set[CacheKey] = set()

        async with self.db.transaction():
            for quote in quotes:
                if quote.price is None or quote.currency is None:
                    continue

                previous = await self._last_price(quote.item_id, quote.retailer_id)
                if previous == (quote.price, quote.currency):
                    logger.debug(f"Price unchanged for {quote.key}")
                    continue

                await self.db.execute(
                    self.quote_history.insert().values(
                        item_id=quote.item_id,
                        retailer_id=quote.retailer_id,
                        price=float(quote.price),
                        currency=quote.currency,
                        fetched_at=_as_utc(quote.fetched_at).replace(tzinfo=None),
                    )
                )
                changed.add(quote.key)
                if previous is not None:
                    logger.info(
                        f"Price changed for {quote.item_id} at {quote.retailer_id}: "
                        f"{previous[0]} → {quote.price}"
                    )

        return changed

    async def latest_quotes(self, since: datetime) -> list[Quote]:
        """Most recent quote per key fetched at or after `since`"""
        assert self.db is not None
        qh = self.quote_history
        latest = (
            select(
                qh.c.item_id,
                qh.c.retailer_id,
                func.max(qh.c.fetched_at).label("fetched_at"),
            )
            .where(qh.c.fetched_at >= _as_utc(since).replace(tzinfo=None))
            .group_by(qh.c.item_id, qh.c.retailer_id)
            .subquery()
        )
        query = select(
            qh.c.item_id, qh.c.retailer_id, qh.c.price, qh.c.currency, qh.c.fetched_at
        ).select_from(
            qh.join(
                latest,
                and_(
                    qh.c.item_id == latest.c.item_id,
                    qh.c.retailer_id == latest.c.retailer_id,
                    qh.c.fetched_at == latest.c.fetched_at,
                ),
            )
        )

        rows = await self.db.fetch_all(query)
        return [
            Quote(
                item_id=row[0],
                retailer_id=row[1],
                price=Decimal(str(row[2])),
                currency=row[3],
                fetched_at=_as_utc(row[4]),
                source="cached",
            )
            for row in rows
        ]

    async def warm_cache(self, cache: PriceCache) -> int:
        """Restore quotes young enough to be served fresh or stale"""
        horizon = cache.clock() - cache.ttl - cache.grace
        since = datetime.fromtimestamp(horizon, tz=timezone.utc)
        restored = 0
        for quote in await self.latest_quotes(since):
            if await cache.restore(quote):
                restored += 1
        logger.info(f"Warmed price cache with {restored} stored quotes")
        return restored

    def enqueue(self, quote: Quote) -> None:
        """Hand a quote to the background writer without waiting"""
        self._queue.put_nowait(quote)

    def start(self) -> None:
        if self._writer_task is None or self._writer_task.done():
            self._writer_task = asyncio.create_task(self._writer_loop())
            self._writer_task.set_name(f"quote-writer-{id(self)}")

    async def stop(self) -> None:
        """Flush queued quotes, then stop the writer"""
        if self._writer_task is not None:
            await self._queue.join()
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None

    async def _writer_loop(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while len(batch) < self.batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())
            try:
                await self.record_quotes(batch)
            except Exception as e:
                logger.error(f"Error persisting {len(batch)} quotes: {str(e)}")
            finally:
                for _ in batch:
                    self._queue.task_done()
