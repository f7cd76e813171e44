"""Shared services for BASTION API."""

from bastion.api.services.metrics import RequestMetrics
from bastion.api.services.rate_limit import RateLimitDecision, SlidingWindowRateLimiter

__all__ = [
    "RequestMetrics",
    "RateLimitDecision",
    "SlidingWindowRateLimiter",
]
