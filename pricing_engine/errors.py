# errors.py
from typing import Literal

UnavailableReason = Literal["timeout", "retailer_error", "rate_limited", "not_found"]


class PricingError(Exception):
    """Base exception for the pricing engine"""


class InvalidRequest(PricingError):
    """Raised for malformed aggregation requests"""


class LookupFailure(PricingError):
    """A single (item, retailer) lookup could not produce a quote"""

    reason: UnavailableReason = "retailer_error"


class UpstreamTimeout(LookupFailure):
    reason: UnavailableReason = "timeout"


class UpstreamError(LookupFailure):
    """4xx/5xx or network failure reported by a retailer"""

    reason: UnavailableReason = "retailer_error"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimited(LookupFailure):
    reason: UnavailableReason = "rate_limited"


class NotFound(LookupFailure):
    """Item has no known mapping for the retailer"""

    reason: UnavailableReason = "not_found"


def reason_for(error: BaseException) -> UnavailableReason:
    """Map any lookup exception onto an unavailable reason"""
    if isinstance(error, LookupFailure):
        return error.reason
    return "retailer_error"
