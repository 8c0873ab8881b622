# models.py
import json
import os
import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

import tldextract
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from pricing_engine.errors import InvalidRequest, UnavailableReason
from pricing_engine.utils.logging_config import get_logger

logger = get_logger(__name__)

# Offline extractor: uses the public suffix snapshot bundled with tldextract
_extract = tldextract.TLDExtract(suffix_list_urls=())
_env_ref = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


def registered_domain(url: str) -> str:
    extracted = _extract(url)
    if not extracted.suffix:
        return extracted.domain.lower()
    return f"{extracted.domain}.{extracted.suffix}".lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Freshness(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    ABSENT = "absent"


class Quote(BaseModel):
    """A priced result for one (item, retailer) pair at a point in time"""

    model_config = ConfigDict(frozen=True)

    item_id: str
    retailer_id: str
    price: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = None
    fetched_at: datetime = Field(default_factory=utcnow)
    source: Literal["live", "cached", "unavailable"] = "live"

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else None

    @model_validator(mode="after")
    def currency_required_with_price(self) -> "Quote":
        if self.price is not None and not self.currency:
            raise ValueError("currency is required when price is present")
        return self

    @property
    def key(self) -> tuple[str, str]:
        return (self.item_id, self.retailer_id)

    def as_cached(self) -> "Quote":
        return self.model_copy(update={"source": "cached"})


class Priced(BaseModel):
    kind: Literal["priced"] = "priced"
    price: Decimal
    currency: str
    source: Literal["live", "cached"]
    retailer_id: str

    def to_response(self) -> dict:
        return {
            "price": str(self.price),
            "currency": self.currency,
            "source": self.source,
            "retailer": self.retailer_id,
        }


class Stale(BaseModel):
    kind: Literal["stale"] = "stale"
    price: Decimal
    currency: str
    retailer_id: str

    def to_response(self) -> dict:
        return {
            "price": str(self.price),
            "currency": self.currency,
            "source": "stale",
            "retailer": self.retailer_id,
        }


class Unavailable(BaseModel):
    kind: Literal["unavailable"] = "unavailable"
    reason: UnavailableReason

    def to_response(self) -> dict:
        return {"unavailable": self.reason}


PriceResult = Annotated[Union[Priced, Stale, Unavailable], Field(discriminator="kind")]


class AggregationRequest(BaseModel):
    """One "price all of these items" call; never persisted"""

    items: list[str]
    retailers: list[str] = Field(default_factory=list)
    deadline: Optional[float] = Field(default=None, gt=0)
    actor_id: str = "anonymous"

    @field_validator("items", "retailers")
    @classmethod
    def dedupe_preserving_order(cls, v: list[str]) -> list[str]:
        cleaned = [entry.strip() for entry in v if entry and entry.strip()]
        return list(dict.fromkeys(cleaned))

    @field_validator("items")
    @classmethod
    def items_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one item id is required")
        return v

    @classmethod
    def build(cls, **data: object) -> "AggregationRequest":
        """Validate, surfacing pydantic errors as InvalidRequest"""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidRequest(str(e)) from e


class EnvVariables(BaseModel):
    api_key: str = Field(..., min_length=1)

    @field_validator("api_key")
    @classmethod
    def resolve_env_reference(cls, v: str) -> str:
        # "${SERPAPI_KEY}" style values are read from the environment
        if match := _env_ref.match(v):
            resolved = os.getenv(match.group(1), "")
            if not resolved:
                raise ValueError(f"environment variable {match.group(1)} is not set")
            return resolved
        return v


class Selectors(BaseModel):
    price: Optional[str] = None
    sale_price: Optional[str] = None

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return getattr(self, key, default)


class SiteRules(BaseModel):
    text_contains: dict[str, bool] = Field(default_factory=dict)
    element_selector: dict[str, bool] = Field(default_factory=dict)


class RetailerSite(BaseModel):
    retailer_id: str
    root_domain: str
    category: Literal["api", "scrape"]
    disabled: bool = False
    currency: str = "USD"

    @field_validator("root_domain")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        return registered_domain(v)


class ApiSite(RetailerSite):
    category: Literal["api"] = "api"
    provider: Literal["rainforest", "serpapi"]
    env_variables: EnvVariables


class ScrapeSite(RetailerSite):
    category: Literal["scrape"] = "scrape"
    site_rules: Optional[SiteRules] = None
    selectors: Selectors


class CatalogItem(BaseModel):
    """A needs-list item and the retailer pages it is sold on"""

    item_id: str
    title: str = ""
    urls: list[str] = Field(default_factory=list)

    def url_for(self, site: RetailerSite) -> Optional[str]:
        for url in self.urls:
            if registered_domain(url) == site.root_domain:
                return url
        return None


class CatalogFile(BaseModel):
    sites: list[ApiSite | ScrapeSite]
    items: list[CatalogItem]

    @classmethod
    def from_json(cls, json_path: Path) -> "CatalogFile":
        with open(json_path, encoding="utf-8") as f:
            raw_data = json.load(f)
        return cls.from_dict(raw_data)

    @classmethod
    def from_dict(cls, raw_data: dict) -> "CatalogFile":
        validated_sites: list[ApiSite | ScrapeSite] = []
        for site_data in raw_data.get("sites", []):
            try:
                if site_data.get("category") == "api":
                    site: ApiSite | ScrapeSite = ApiSite.model_validate(site_data)
                else:
                    site = ScrapeSite.model_validate(site_data)
                validated_sites.append(site)
            except ValidationError as e:
                logger.error(f"Invalid site config: {e}")
                continue

        disabled_domains = {
            site.root_domain for site in validated_sites if site.disabled
        }

        items = []
        for item_data in raw_data.get("items", []):
            item = CatalogItem.model_validate(item_data)
            item.urls = [
                url for url in item.urls if registered_domain(url) not in disabled_domains
            ]
            items.append(item)

        return cls(
            sites=[site for site in validated_sites if not site.disabled],
            items=items,
        )

    def site_map(self) -> dict[str, ApiSite | ScrapeSite]:
        return {site.retailer_id: site for site in self.sites}

    def item_map(self) -> dict[str, CatalogItem]:
        return {item.item_id: item for item in self.items}
