"""Registry for managing per-queue rate limiters."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from quorum.core.rate_limit.limiter import QueueRateLimiter

if TYPE_CHECKING:
    from quorum.core.config import QueueSettings, RateLimitSettings


class NoOpLimiter:
    """No-op limiter when rate limiting is disabled."""

    def try_acquire(self, weight: int = 1) -> bool:
        """No-op try_acquire (always succeeds)."""
        return True

    def close(self) -> None:
        """Nothing to release."""


class RateLimitRegistry:
    """Registry that manages one token bucket per queue.

    Creates limiters on demand from queue configuration and reuses the
    instance for the same queue.

    Example:
        registry = RateLimitRegistry(settings.rate_limit, settings.queues)
        if registry.get_limiter("default").try_acquire():
            ...
    """

    def __init__(
        self,
        settings: RateLimitSettings,
        queues: dict[str, QueueSettings],
    ) -> None:
        self._settings = settings
        self._queues = queues
        self._limiters: dict[str, QueueRateLimiter | NoOpLimiter] = {}
        self._lock = threading.Lock()

    def get_limiter(self, queue_name: str) -> QueueRateLimiter | NoOpLimiter:
        """Get or create the limiter for a queue.

        Raises:
            KeyError: If the queue is not configured
        """
        if not self._settings.enabled:
            return NoOpLimiter()

        with self._lock:
            if queue_name not in self._limiters:
                queue = self._queues[queue_name]
                self._limiters[queue_name] = QueueRateLimiter(
                    name=queue_name,
                    rate_per_minute=queue.rate_per_minute,
                    burst=queue.burst,
                    persistence_path=self._settings.persistence_path,
                )
            return self._limiters[queue_name]

    def close(self) -> None:
        """Close every limiter created so far."""
        with self._lock:
            for limiter in self._limiters.values():
                limiter.close()
            self._limiters.clear()
