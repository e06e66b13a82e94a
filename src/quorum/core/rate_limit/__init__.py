"""Rate limiting for queue admission.

Uses pyrate-limiter with optional SQLite persistence.
"""

from quorum.core.rate_limit.limiter import QueueRateLimiter, bucket_rate
from quorum.core.rate_limit.registry import NoOpLimiter, RateLimitRegistry

__all__ = ["NoOpLimiter", "QueueRateLimiter", "RateLimitRegistry", "bucket_rate"]
