import asyncio

from pricing_engine.models import Quote
from pricing_engine.utils.logging_config import get_logger

logger = get_logger(__name__)

CacheKey = tuple[str, str]


def _consume_exception(future: asyncio.Future) -> None:
    # Waiters may have stopped listening at their deadline
    if not future.cancelled():
        future.exception()


class RequestDeduplicator:
    """Collapses concurrent lookups for one (item, retailer) key into a single call

    The first caller for a key becomes the owner and must finish with
    `resolve` or `fail`. Everyone who asks in the meantime gets the same
    future. The entry is dropped as soon as it completes so the next
    request issues a fresh lookup.
    """

    def __init__(self) -> None:
        self._in_flight: dict[CacheKey, asyncio.Future[Quote]] = {}

    def acquire_or_join(
        self, item_id: str, retailer_id: str
    ) -> tuple[bool, asyncio.Future[Quote]]:
        key = (item_id, retailer_id)
        # No await between lookup and insert, so the check-and-set is atomic
        existing = self._in_flight.get(key)
        if existing is not None:
            logger.debug(f"Joining in-flight lookup for {key}")
            return False, existing

        future: asyncio.Future[Quote] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._in_flight[key] = future
        return True, future

    def resolve(self, item_id: str, retailer_id: str, quote: Quote) -> None:
        future = self._release((item_id, retailer_id))
        if future is not None and not future.done():
            future.set_result(quote)

    def fail(self, item_id: str, retailer_id: str, error: BaseException) -> None:
        future = self._release((item_id, retailer_id))
        if future is not None and not future.done():
            future.set_exception(error)

    def _release(self, key: CacheKey) -> asyncio.Future[Quote] | None:
        future = self._in_flight.pop(key, None)
        if future is None:
            logger.warning(f"Completion for {key} with no in-flight lookup")
        return future

    def is_in_flight(self, item_id: str, retailer_id: str) -> bool:
        return (item_id, retailer_id) in self._in_flight

    def in_flight(self) -> int:
        return len(self._in_flight)
