from .cache import QueryResultCache, fingerprint, is_cacheable
from .ratelimit import RateLimiter, RateLimitStatus

__all__ = [
    "QueryResultCache",
    "fingerprint",
    "is_cacheable",
    "RateLimiter",
    "RateLimitStatus",
]
