"""
Cycle manager: periodic retirement sweep of the shell wallet pool.

Each run retires wallets created more than retirement_age_cycles cycles ago,
force-dispersing any balance they still hold (single hop, audit record in the
ledger, aggregate updated like a normal dispersal), then removes wallets that
are inactive, empty and unused past the retention window.

Age is counted in the cycle length in force at sweep time. Fees still pending
or mixing in a force-dispersed wallet are settled to the same destination:
their armed step is cancelled and they move through dispersed to completed.
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from backend_feerouter.config import MixingConfig
from backend_feerouter.database.models import ZERO
from backend_feerouter.logging import get_logger
from backend_feerouter.routing import addresses
from backend_feerouter.routing.fee_ledger import FeeLedger
from backend_feerouter.routing.status import StatusReporter
from backend_feerouter.routing.wallet_pool import WalletPool, age_in_cycles, cycle_number
from backend_feerouter.scheduler import Scheduler, TimerHandle

logger = get_logger(__name__)


@dataclass
class CycleReport:
    """Outcome of one retirement sweep."""

    cycle_number: int
    ran_at: float
    retired_wallet_ids: list[str] = field(default_factory=list)
    forced_dispersals: list[str] = field(default_factory=list)
    """Audit transaction ids written for force-dispersed balances."""
    dispersed_amount: Decimal = ZERO
    settled_transaction_ids: list[str] = field(default_factory=list)
    """Routed fees completed by a forced dispersal of the wallet holding them."""
    collected_wallet_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_number": self.cycle_number,
            "ran_at": self.ran_at,
            "retired_wallet_ids": list(self.retired_wallet_ids),
            "forced_dispersals": list(self.forced_dispersals),
            "dispersed_amount": str(self.dispersed_amount),
            "settled_transaction_ids": list(self.settled_transaction_ids),
            "collected_wallet_ids": list(self.collected_wallet_ids),
        }


class CycleManager:
    def __init__(
        self,
        pool: WalletPool,
        ledger: FeeLedger,
        status: StatusReporter,
        scheduler: Scheduler,
        config: Callable[[], MixingConfig],
        rng: random.Random,
        *,
        lock: threading.RLock,
        commit: Callable[[], None],
        cancel_step: Callable[[str], bool],
    ) -> None:
        self._pool = pool
        self._ledger = ledger
        self._status = status
        self._scheduler = scheduler
        self._config = config
        self._rng = rng
        self._lock = lock
        self._commit = commit
        self._cancel_step = cancel_step
        self._timer: TimerHandle | None = None

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.cancelled

    def start(self) -> None:
        """Arm the periodic sweep; no-op when already armed."""
        with self._lock:
            if self.running:
                return
            self._arm()

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _arm(self) -> None:
        interval = self._config().cycle_interval_sec
        self._timer = self._scheduler.call_later(interval, self._on_timer, name="retirement_cycle")
        if self._timer.cancelled:
            # scheduler already shut down
            self._timer = None
            return
        self._status.set_cycle_times(next_=self._scheduler.now() + interval)

    def _on_timer(self) -> None:
        with self._lock:
            if self._timer is None:
                return
            self._timer = None
            try:
                self.run_cycle()
            except Exception as e:
                logger.exception("cycle_failed", error=str(e))
            self._arm()
            self._commit()

    def run_cycle(self) -> CycleReport:
        """One sweep. Caller commits; the periodic timer and execute_cycle() both do."""
        with self._lock:
            cfg = self._config()
            now = self._scheduler.now()
            interval = cfg.cycle_interval_sec
            current = cycle_number(now, interval)
            report = CycleReport(cycle_number=current, ran_at=now)
            self._status.set_cycle_times(last=now, next_=now + interval)

            for wallet in self._pool.wallets():
                if age_in_cycles(wallet, now, interval) <= cfg.retirement_age_cycles:
                    continue
                if wallet.balance > 0:
                    self._force_disperse(wallet.id, wallet.balance, now, report)
                    report.retired_wallet_ids.append(wallet.id)
                elif wallet.is_active:
                    self._pool.retire_wallet(wallet.id)
                    report.retired_wallet_ids.append(wallet.id)

            report.collected_wallet_ids = self._pool.collect_garbage(now, cfg.wallet_retention_sec)
            logger.info(
                "cycle_done",
                cycle_number=current,
                retired=len(report.retired_wallet_ids),
                forced_dispersals=len(report.forced_dispersals),
                settled=len(report.settled_transaction_ids),
                dispersed_amount=report.dispersed_amount,
                collected=len(report.collected_wallet_ids),
                active_wallets=self._pool.active_count(),
            )
            return report

    def _force_disperse(self, wallet_id: str, amount: Decimal, now: float, report: CycleReport) -> None:
        destination = addresses.destination_address(self._rng)
        owners = self._ledger.holders(wallet_id)
        # debit empties and deactivates the wallet
        self._pool.debit(wallet_id, amount, now)
        self._status.record_dispersal(amount)
        audit = self._ledger.record_forced_dispersal(wallet_id, amount, destination, now)
        for tx in owners:
            self._cancel_step(tx.id)
            self._ledger.settle_forced_dispersal(tx.id, destination, now)
            report.settled_transaction_ids.append(tx.id)
        report.forced_dispersals.append(audit.id)
        report.dispersed_amount += amount
        logger.warning(
            "wallet_force_dispersed",
            wallet_id=wallet_id,
            amount=amount,
            audit_transaction_id=audit.id,
            settled_transaction_ids=[tx.id for tx in owners],
        )
