"""Budget ledger: per-scope spend caps over rolling windows.

Every mutation is a compare-and-set on the scope record, so concurrent
workers (threads or processes) cannot overspend a scope. Authorization
reserves the estimated cost; the reservation is converted into spend by
``commit`` or dropped by ``release``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime

import structlog

from quorum.contracts.enums import BudgetWindow
from quorum.contracts.errors import BudgetExceeded, StaleRecord, ValidationError
from quorum.contracts.records import BudgetScope
from quorum.core.clock import Clock, utc_now
from quorum.core.config import BudgetScopeSettings
from quorum.core.store import RecordStore

logger = structlog.get_logger(__name__)

# Float slack for cap comparisons (costs are sums of small decimals)
_EPSILON = 1e-9


def window_start_for(window: BudgetWindow, now: datetime) -> datetime:
    """Start of the window containing ``now`` (UTC)."""
    now = now.astimezone(UTC)
    if window is BudgetWindow.DAILY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window is BudgetWindow.MONTHLY:
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return now


class BudgetLedger:
    """Authorizes, commits and releases spend against budget scopes.

    Scopes are created from configuration the first time they are used.
    """

    def __init__(
        self,
        store: RecordStore,
        budgets: Mapping[str, BudgetScopeSettings],
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._budgets = dict(budgets)
        self._clock = clock

    def scope(self, name: str) -> BudgetScope:
        """Current state of a scope, creating it from configuration if needed.

        Raises:
            ValidationError: If the scope is not configured
        """
        existing = self._store.find(BudgetScope, name)
        if existing is not None:
            return existing
        try:
            settings = self._budgets[name]
        except KeyError:
            raise ValidationError(
                f"Unknown budget scope '{name}'. Configured: {sorted(self._budgets)}"
            ) from None
        now = self._clock()
        record = BudgetScope(
            id=name,
            cap_usd=settings.cap_usd,
            window=settings.window,
            window_start=window_start_for(settings.window, now),
        )
        try:
            self._store.put(record)
        except StaleRecord:
            # created concurrently
            return self._store.get(BudgetScope, name)
        logger.info("budget_scope_created", scope=name, cap_usd=settings.cap_usd)
        return record

    def authorize(self, scope: str, estimated_usd: float) -> bool:
        """Reserve ``estimated_usd`` if the scope's current window can cover it."""
        granted, _ = self._reserve(scope, estimated_usd)
        return granted

    def authorize_all(self, scopes: Iterable[str], estimated_usd: float) -> None:
        """Reserve the estimate in every scope, or in none of them.

        Raises:
            BudgetExceeded: For the first scope that denies
        """
        reserved: list[str] = []
        for name in scopes:
            granted, record = self._reserve(name, estimated_usd)
            if not granted:
                for done in reserved:
                    self.release(done, estimated_usd)
                raise BudgetExceeded(name, estimated_usd, max(0.0, record.available_usd))
            reserved.append(name)

    def commit(self, scope: str, actual_usd: float, reserved_usd: float = 0.0) -> BudgetScope:
        """Record actual spend and drop the matching reservation."""
        self.scope(scope)
        now = self._clock()

        def mutate(record: BudgetScope) -> None:
            self._sync(record, now)
            record.spent_usd += actual_usd
            record.reserved_usd = max(0.0, record.reserved_usd - reserved_usd)

        result = self._store.update(BudgetScope, scope, mutate)
        logger.debug(
            "budget_committed", scope=scope, actual_usd=actual_usd, spent_usd=result.spent_usd
        )
        return result

    def commit_all(
        self, scopes: Iterable[str], actual_usd: float, reserved_usd: float = 0.0
    ) -> None:
        for name in scopes:
            self.commit(name, actual_usd, reserved_usd)

    def release(self, scope: str, reserved_usd: float) -> BudgetScope:
        """Drop a reservation without recording spend."""
        self.scope(scope)
        now = self._clock()

        def mutate(record: BudgetScope) -> bool | None:
            if reserved_usd <= 0:
                return False
            self._sync(record, now)
            record.reserved_usd = max(0.0, record.reserved_usd - reserved_usd)
            return None

        return self._store.update(BudgetScope, scope, mutate)

    def release_all(self, scopes: Iterable[str], reserved_usd: float) -> None:
        for name in scopes:
            self.release(name, reserved_usd)

    def rollover(self, now: datetime | None = None) -> list[str]:
        """Reset spend of every scope whose window has ended.

        Returns:
            Names of the scopes that rolled over
        """
        now = now or self._clock()
        rolled: list[str] = []
        for name in self._budgets:
            self.scope(name)
            changed = False

            def mutate(record: BudgetScope) -> bool:
                nonlocal changed
                changed = self._sync(record, now)
                return changed

            after = self._store.update(BudgetScope, name, mutate)
            if changed:
                rolled.append(name)
                logger.info("budget_rolled_over", scope=name, window_start=after.window_start)
        return rolled

    def _reserve(self, scope: str, estimated_usd: float) -> tuple[bool, BudgetScope]:
        self.scope(scope)
        now = self._clock()
        granted = False

        def mutate(record: BudgetScope) -> bool | None:
            nonlocal granted
            changed = self._sync(record, now)
            granted = (
                record.spent_usd + record.reserved_usd + estimated_usd
                <= record.cap_usd + _EPSILON
            )
            if granted:
                record.reserved_usd += estimated_usd
                return None
            return None if changed else False

        record = self._store.update(BudgetScope, scope, mutate)
        if not granted:
            logger.info(
                "budget_denied",
                scope=scope,
                estimated_usd=estimated_usd,
                spent_usd=record.spent_usd,
                reserved_usd=record.reserved_usd,
                cap_usd=record.cap_usd,
            )
        return granted, record

    def _sync(self, record: BudgetScope, now: datetime) -> bool:
        """Apply configuration changes and window rollover. Returns True if changed."""
        changed = False
        settings = self._budgets.get(record.id)
        if settings is not None and settings.cap_usd != record.cap_usd:
            record.cap_usd = settings.cap_usd
            changed = True
        if record.window is BudgetWindow.NONE:
            return changed
        start = window_start_for(record.window, now)
        if start > record.window_start:
            record.spent_usd = 0.0
            record.window_start = start
            changed = True
        return changed
