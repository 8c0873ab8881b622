# rate_limiter.py
import asyncio
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from aiolimiter import AsyncLimiter

from pricing_engine.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class RateWindow:
    window_start: float
    count: int = 0


class ActorRateLimiter:
    """Fixed-window operation counter per (actor, operation)

    In-memory only; limits reset on restart. This damps abuse, it is not a
    security boundary.
    """

    def __init__(
        self,
        max_count: int = 10,
        window: float = 3600,
        overrides: Optional[dict[str, int]] = None,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_count < 0 or window <= 0:
            raise ValueError("max_count must be >= 0 and window positive")
        self.max_count = max_count
        self.window = window
        self.overrides = dict(overrides or {})
        self.sweep_interval = sweep_interval or window
        self.clock = clock
        self._windows: dict[tuple[str, str], RateWindow] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def limit_for(self, operation: str) -> int:
        return self.overrides.get(operation, self.max_count)

    async def allow(self, actor_id: str, operation: str) -> bool:
        """Count one operation for the actor; False (and no count) when over the limit"""
        key = (actor_id, operation)
        now = self.clock()
        # Check-and-increment has no suspension point, so it is atomic per key
        current = self._windows.get(key)
        if current is None or now - current.window_start >= self.window:
            current = RateWindow(window_start=now)
            self._windows[key] = current

        if current.count >= self.limit_for(operation):
            logger.with_context(actor_id=actor_id, operation=operation).warning(
                f"Actor {actor_id} exceeded {operation} limit"
            )
            return False

        current.count += 1
        return True

    def remaining(self, actor_id: str, operation: str) -> int:
        current = self._windows.get((actor_id, operation))
        limit = self.limit_for(operation)
        if current is None or self.clock() - current.window_start >= self.window:
            return limit
        return max(0, limit - current.count)

    def sweep(self) -> int:
        """Drop windows that have fully elapsed"""
        now = self.clock()
        stale = [
            key
            for key, rate_window in self._windows.items()
            if now - rate_window.window_start >= self.window
        ]
        for key in stale:
            del self._windows[key]
        if stale:
            logger.debug(f"Swept {len(stale)} elapsed rate windows")
        return len(stale)

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            self._sweep_task.set_name(f"rate-window-sweep-{id(self)}")

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error in rate window sweep: {str(e)}")


class RetailerRateLimiter:
    """Per-retailer request pacing with adaptive limits persisted to JSON"""

    def __init__(self, config_path: str = "data/rate_limits.json") -> None:
        self.default_rate = 5
        self.default_period = 1.0  # seconds

        self.config_path = config_path
        self.config_dir = os.path.dirname(config_path)

        self.limiters: dict[str, AsyncLimiter] = {}
        self.retailer_configs: dict[str, tuple[float, float]] = {}

        self._load_configs()

        self.last_request_time: dict[str, float] = {}
        self.success_counts: dict[str, int] = {}
        self.failure_counts: dict[str, int] = {}

        self.configs_modified = False

    def _load_configs(self) -> None:
        """Load rate limit configurations from file"""
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path) as f:
                    loaded_configs = json.load(f)

                for retailer, config in loaded_configs.items():
                    if isinstance(config, list) and len(config) == 2:
                        self.retailer_configs[retailer] = (
                            float(config[0]),
                            float(config[1]),
                        )

                logger.info(
                    f"Loaded rate limits for {len(self.retailer_configs)} retailers"
                )
            else:
                logger.info("No rate limit configuration file found, using defaults")
        except (OSError, ValueError) as e:
            logger.error(f"Error loading rate limit configurations: {str(e)}")

    async def save_configs(self) -> None:
        """Save adjusted limits so the next run starts from them"""
        if not self.configs_modified:
            logger.debug("Rate limit config not modified")
            return

        try:
            if self.config_dir:
                Path(self.config_dir).mkdir(parents=True, exist_ok=True)

            with open(self.config_path, "w") as f:
                json.dump(self.retailer_configs, f, indent=2)

            logger.info(f"Saved rate limits for {len(self.retailer_configs)} retailers")
            self.configs_modified = False
        except OSError as e:
            logger.error(f"Error saving rate limit configurations: {str(e)}")

    def get_limiter(self, retailer_id: str) -> AsyncLimiter:
        if retailer_id not in self.limiters:
            rate, period = self.retailer_configs.get(
                retailer_id, (self.default_rate, self.default_period)
            )
            self.limiters[retailer_id] = AsyncLimiter(rate, period)
            self.success_counts.setdefault(retailer_id, 0)
            self.failure_counts.setdefault(retailer_id, 0)
            logger.debug(f"Created rate limiter for {retailer_id}: {rate} req/{period}s")

        return self.limiters[retailer_id]

    async def acquire(self, retailer_id: str) -> None:
        """Wait until a request to the retailer is allowed"""
        limiter = self.get_limiter(retailer_id)

        now = time.time()
        if retailer_id in self.last_request_time:
            time_since_last = now - self.last_request_time[retailer_id]
            if time_since_last < 0.1:
                await asyncio.sleep(0.1 - time_since_last)

        await limiter.acquire()
        self.last_request_time[retailer_id] = time.time()

    def update_rate(self, retailer_id: str, success: bool) -> None:
        """Slow down on failures, speed back up under sustained success"""
        if retailer_id not in self.limiters:
            return

        if success:
            self.success_counts[retailer_id] += 1
        else:
            self.failure_counts[retailer_id] += 1

        total_requests = self.success_counts[retailer_id] + self.failure_counts[retailer_id]
        if total_requests < 10:
            return

        success_rate = self.success_counts[retailer_id] / total_requests
        current_limiter = self.limiters[retailer_id]
        current_rate = current_limiter.max_rate
        current_period = current_limiter.time_period

        if not success or success_rate < 0.7:
            new_rate = round(max(1, current_rate * 0.75), 1)
            if new_rate != current_rate:
                self._replace_limiter(retailer_id, new_rate, current_period)
                logger.warning(
                    f"Reducing rate for {retailer_id} to {new_rate} req/{current_period}s"
                )
        elif success_rate > 0.95 and current_rate < 10:
            new_rate = round(min(10, current_rate * 1.1), 1)
            if new_rate != current_rate:
                self._replace_limiter(retailer_id, new_rate, current_period)
                logger.info(
                    f"Increasing rate for {retailer_id} to {new_rate} req/{current_period}s"
                )

        if total_requests >= 50:
            self.success_counts[retailer_id] = int(self.success_counts[retailer_id] * 0.5)
            self.failure_counts[retailer_id] = int(self.failure_counts[retailer_id] * 0.5)

    def _replace_limiter(self, retailer_id: str, rate: float, period: float) -> None:
        self.limiters[retailer_id] = AsyncLimiter(rate, period)
        self.retailer_configs[retailer_id] = (rate, period)
        self.configs_modified = True
