"""Token bucket per queue, backed by pyrate-limiter."""

from __future__ import annotations

import re
import sqlite3
import threading
import time as time_module
from typing import TYPE_CHECKING

from pyrate_limiter import (  # type: ignore[attr-defined]
    BucketFullException,
    InMemoryBucket,
    Limiter,
    Rate,
    SQLiteBucket,
    SQLiteQueries,
)

if TYPE_CHECKING:
    from types import TracebackType

_TABLE_SAFE = re.compile(r"[^A-Za-z0-9_]")


def bucket_rate(rate_per_minute: float, burst: int) -> Rate:
    """Express a token bucket as a pyrate-limiter window.

    A bucket of capacity ``burst`` refilled at ``rate_per_minute`` admits
    at most ``burst`` acquisitions in the time it takes to refill fully.
    """
    interval_ms = max(1, int(60_000 * burst / rate_per_minute))
    return Rate(burst, interval_ms)


class QueueRateLimiter:
    """Non-blocking token bucket for one queue.

    Wraps pyrate-limiter with optional SQLite persistence so several
    worker processes share one bucket per queue.

    Example:
        limiter = QueueRateLimiter("default", rate_per_minute=60, burst=10)
        if limiter.try_acquire():
            lease_next_run()
        else:
            defer()
    """

    def __init__(
        self,
        name: str,
        rate_per_minute: float,
        burst: int,
        persistence_path: str | None = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            name: Queue name (used as bucket key)
            rate_per_minute: Token refill rate
            burst: Bucket capacity
            persistence_path: Optional SQLite database path for persistence
        """
        self.name = name
        self.rate_per_minute = rate_per_minute
        self.burst = burst
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

        rates = [bucket_rate(rate_per_minute, burst)]
        if persistence_path:
            self._conn = sqlite3.connect(persistence_path, check_same_thread=False)
            table_name = f"ratelimit_{_TABLE_SAFE.sub('_', name)}"
            self._conn.execute(SQLiteQueries.CREATE_BUCKET_TABLE.format(table=table_name))
            self._conn.commit()
            self._bucket: InMemoryBucket | SQLiteBucket = SQLiteBucket(
                rates=rates,
                conn=self._conn,
                table=table_name,
            )
        else:
            self._bucket = InMemoryBucket(rates=rates)

        # raise_when_fail with no max_delay: a full bucket fails immediately
        self._limiter = Limiter(self._bucket, raise_when_fail=True)

    def try_acquire(self, weight: int = 1) -> bool:
        """Take tokens without blocking.

        Returns:
            True if acquired, False if the bucket is empty
        """
        with self._lock:
            try:
                self._limiter.try_acquire(self.name, weight=weight)
            except BucketFullException:
                return False
            return True

    def close(self) -> None:
        """Close the limiter and release resources."""
        self._limiter.dispose(self._bucket)
        if self._conn is not None:
            # Allow leaker threads to process disposal before closing connection
            time_module.sleep(0.05)
            self._conn.close()
            self._conn = None

    def __enter__(self) -> QueueRateLimiter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
