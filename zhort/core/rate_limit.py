"""
Rate Limiting Configuration

Two layers of rate limiting:
- slowapi: coarse per-IP throttling of read-only HTTP endpoints (analytics,
  mask config) where no business decision depends on the count
- RATE_LIMIT_ACTIONS: the sliding-window table enforced by
  zhort.services.rate_limiter.RateLimiter against the database, keyed by
  (identifier, action)
"""

from dataclasses import dataclass

from slowapi import Limiter
from slowapi.util import get_remote_address

# Initialize rate limiter
# Uses IP address for rate limiting
limiter = Limiter(key_func=get_remote_address)

# Format: "count/period" (e.g., "30/minute" means 30 requests per minute)
ENDPOINT_LIMITS = {
    "analytics": "30/minute",
    "mask_config": "120/minute",
}


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding window definition for one action."""
    window_ms: int
    max_requests: int


_HOUR_MS = 60 * 60 * 1000

RATE_LIMIT_ACTIONS = {
    # Anonymous users (by IP)
    "create_link_anonymous": RateLimitConfig(window_ms=_HOUR_MS, max_requests=10),
    "create_paste_anonymous": RateLimitConfig(window_ms=_HOUR_MS, max_requests=5),
    # Authenticated users (by owner id)
    "create_link_authenticated": RateLimitConfig(window_ms=_HOUR_MS, max_requests=50),
    "create_paste_authenticated": RateLimitConfig(window_ms=_HOUR_MS, max_requests=20),
    # Password attempts on protected links
    "access_protected_link": RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=5),
}
