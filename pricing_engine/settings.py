# settings.py
import os
from typing import Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "PRICING_"


class EngineSettings(BaseModel):
    """Tunables for the pricing engine, all in seconds unless noted"""

    cache_ttl: float = Field(default=600, gt=0)
    # Grace window: how long past the TTL a quote may still be served stale
    cache_grace: float = Field(default=300, ge=0)
    sweep_interval: float = Field(default=60, gt=0)
    cache_shards: int = Field(default=16, ge=1)
    deadline: float = Field(default=10, gt=0)
    lookup_timeout: float = Field(default=8, gt=0)
    per_retailer_concurrency: int = Field(default=5, ge=1)
    rate_limit_max: int = Field(default=10, ge=0)  # operations per window
    # Upstream lookups an actor may trigger per window
    lookup_quota: int = Field(default=500, ge=0)
    rate_limit_window: float = Field(default=3600, gt=0)
    database_url: Optional[str] = None
    rate_limits_path: str = "data/rate_limits.json"
    log_dir: str = "logs"

    @classmethod
    def from_env(cls, **overrides: object) -> "EngineSettings":
        """Read PRICING_* variables; explicit overrides (e.g. CLI flags) win"""
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
