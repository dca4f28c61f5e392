"""
Routing status aggregate, subscriptions and conservation audit.

The aggregate is updated incrementally by the engine (fee collected, fee
dispersed) and handed out only as copies. Listeners receive a copy after every
state-affecting mutation; a failing listener is logged and skipped so the rest
of the fan-out (and the engine) keeps going.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from backend_feerouter.database.models import RoutingStatus
from backend_feerouter.logging import get_logger

logger = get_logger(__name__)

StatusListener = Callable[[RoutingStatus], None]


class Subscription:
    """Revocable handle returned by subscribe()."""

    def __init__(self, reporter: StatusReporter, key: int) -> None:
        self._reporter = reporter
        self._key = key
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._reporter._remove(self._key)
            self._active = False


@dataclass
class ConservationReport:
    """Aggregate vs. ledger and wallet balances."""

    total_fees_collected: Decimal
    fees_in_mixing: Decimal
    fees_dispersed: Decimal
    ledger_collected: Decimal
    """Sum of routed fee amounts recorded in the ledger."""
    wallet_holdings: Decimal
    """Sum of all shell wallet balances."""

    @property
    def aggregate_balanced(self) -> bool:
        return self.total_fees_collected == self.fees_in_mixing + self.fees_dispersed

    @property
    def ok(self) -> bool:
        return (
            self.aggregate_balanced
            and self.ledger_collected == self.total_fees_collected
            and self.wallet_holdings == self.fees_in_mixing
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_fees_collected": str(self.total_fees_collected),
            "fees_in_mixing": str(self.fees_in_mixing),
            "fees_dispersed": str(self.fees_dispersed),
            "ledger_collected": str(self.ledger_collected),
            "wallet_holdings": str(self.wallet_holdings),
            "ok": self.ok,
        }


class StatusReporter:
    def __init__(self) -> None:
        self._status = RoutingStatus()
        self._listeners: dict[int, StatusListener] = {}
        self._keys = itertools.count(1)
        self._lock = threading.Lock()
        self._muted = False

    # --- aggregate -------------------------------------------------------

    def snapshot(self) -> RoutingStatus:
        return self._status.copy()

    def record_collected(self, amount: Decimal) -> None:
        self._status.total_fees_collected += amount
        self._status.fees_in_mixing += amount

    def record_dispersal(self, amount: Decimal) -> None:
        """Move amount from in-mixing to dispersed in one step."""
        self._status.fees_in_mixing -= amount
        self._status.fees_dispersed += amount

    def set_active_wallets(self, count: int) -> None:
        self._status.active_shell_wallets = count

    def set_cycle_times(self, *, last: float | None = None, next_: float | None = None) -> None:
        if last is not None:
            self._status.last_cycle_time = last
        if next_ is not None:
            self._status.next_cycle_time = next_

    def restore(self, status: RoutingStatus) -> None:
        self._status = status.copy()

    def reconcile(self, ledger_collected: Decimal, wallet_holdings: Decimal) -> ConservationReport:
        s = self._status
        report = ConservationReport(
            total_fees_collected=s.total_fees_collected,
            fees_in_mixing=s.fees_in_mixing,
            fees_dispersed=s.fees_dispersed,
            ledger_collected=ledger_collected,
            wallet_holdings=wallet_holdings,
        )
        if not report.ok:
            logger.error("conservation_violation", **report.to_dict())
        return report

    # --- subscriptions ---------------------------------------------------

    def subscribe(self, listener: StatusListener) -> Subscription:
        if not callable(listener):
            raise TypeError("listener must be callable")
        with self._lock:
            key = next(self._keys)
            self._listeners[key] = listener
        return Subscription(self, key)

    def _remove(self, key: int) -> None:
        with self._lock:
            self._listeners.pop(key, None)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def mute(self) -> None:
        """Suppress all further notifications (engine stopped)."""
        self._muted = True

    def notify(self) -> int:
        """Invoke every listener with its own copy of the status. Returns listeners that failed."""
        if self._muted:
            return 0
        with self._lock:
            listeners = list(self._listeners.values())
        failed = 0
        for listener in listeners:
            try:
                listener(self._status.copy())
            except Exception as e:
                failed += 1
                logger.warning("status_listener_failed", error=str(e), exc_info=True)
        return failed


__all__ = ["ConservationReport", "StatusListener", "StatusReporter", "Subscription"]
