"""Request throttling for public endpoints."""

from .rate_limit import RateLimitConfig, RateLimiter, RateLimitExceeded

__all__ = ["RateLimitConfig", "RateLimitExceeded", "RateLimiter"]
