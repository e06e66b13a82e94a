"""Time and identifier helpers shared by the engine.

Engine components take a ``Clock`` so tests can drive time explicitly.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def generate_id() -> str:
    """Random record id."""
    return uuid.uuid4().hex
