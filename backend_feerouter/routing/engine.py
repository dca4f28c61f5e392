"""
FeeRoutingEngine: the public face of the fee router.

An explicit engine object (no process-wide singleton) built from an injected
MixingConfig, key-value store, scheduler and random source, so tests can run
several isolated engines side by side on virtual clocks.

Concurrency: every mutation of the wallet pool, ledger and aggregate holds one
RLock, and every timer callback runs on the scheduler's single worker. Public
reads return copies and never wait on a timer.

Persistence: the latest snapshot is loaded in the constructor, before any call
is accepted; after every mutation a full snapshot is written. Store failures
are logged and swallowed; in-memory state stays authoritative.
"""

from __future__ import annotations

import math
import random
import threading
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from backend_feerouter.config import MixingConfig
from backend_feerouter.core.exceptions import (
    EngineStopped,
    InvalidAmount,
    PersistenceFailure,
    TransactionNotFound,
)
from backend_feerouter.database import KeyValueStore, MemoryStore, SnapshotRepository
from backend_feerouter.database.models import (
    FeeTransaction,
    RoutingStatus,
    ShellWallet,
    Snapshot,
    VendorFeeSummary,
)
from backend_feerouter.logging import get_logger
from backend_feerouter.routing.cycle_manager import CycleManager, CycleReport
from backend_feerouter.routing.fee_ledger import FeeLedger
from backend_feerouter.routing.mixer import MixingScheduler
from backend_feerouter.routing.status import (
    ConservationReport,
    StatusListener,
    StatusReporter,
    Subscription,
)
from backend_feerouter.routing.wallet_pool import WalletPool
from backend_feerouter.scheduler import Scheduler, ThreadedScheduler

logger = get_logger(__name__)


def parse_amount(value: Any) -> Decimal:
    """Convert a caller-supplied fee to Decimal; raise InvalidAmount unless positive and finite."""
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(f"fee amount must be a number, got {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidAmount(f"fee amount must be finite, got {value!r}")
        value = repr(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmount(f"fee amount is not a number: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidAmount(f"fee amount must be finite, got {value!r}")
    if amount <= 0:
        raise InvalidAmount(f"fee amount must be positive, got {amount}")
    return amount


class FeeRoutingEngine:
    """
    Routes fees through the shell wallet pool.

    Args:
        config: Mixing parameters; defaults to MixingConfig().
        store: Snapshot store; defaults to a fresh MemoryStore.
        scheduler: Timer scheduler; defaults to a ThreadedScheduler (real clock).
        rng: Random source for rounds, delays, ids and addresses.
    """

    def __init__(
        self,
        config: MixingConfig | None = None,
        store: KeyValueStore | None = None,
        scheduler: Scheduler | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or MixingConfig()
        self._repo = SnapshotRepository(store if store is not None else MemoryStore())
        self._scheduler = scheduler if scheduler is not None else ThreadedScheduler()
        self._rng = rng or random.Random()
        self._lock = threading.RLock()
        self._started = False
        self._stopped = False

        get_config = self.get_config
        self._pool = WalletPool(get_config, self._rng)
        self._ledger = FeeLedger(self._pool, get_config, self._rng)
        self._status = StatusReporter()
        self._mixer = MixingScheduler(
            self._pool,
            self._ledger,
            self._status,
            self._scheduler,
            get_config,
            self._rng,
            lock=self._lock,
            commit=self._commit,
        )
        self._cycles = CycleManager(
            self._pool,
            self._ledger,
            self._status,
            self._scheduler,
            get_config,
            self._rng,
            lock=self._lock,
            commit=self._commit,
            cancel_step=self._mixer.cancel,
        )
        self._load()

    # --- lifecycle -------------------------------------------------------

    def _load(self) -> None:
        try:
            snapshot = self._repo.load()
        except PersistenceFailure as e:
            logger.error("persistence_load_failed", error=str(e))
            return
        if snapshot is None:
            logger.info("persistence_empty")
            return
        self._pool.restore(snapshot.wallets)
        self._ledger.restore(snapshot.transactions)
        self._status.restore(snapshot.status)
        logger.info(
            "persistence_loaded",
            wallets=len(snapshot.wallets),
            transactions=len(snapshot.transactions),
            total_fees_collected=str(snapshot.status.total_fees_collected),
        )

    def start(self) -> None:
        """Resume unresolved transactions from the loaded snapshot and start the cycle timer."""
        with self._lock:
            self._ensure_running()
            if self._started:
                return
            self._started = True
            now = self._scheduler.now()
            resumed = sum(1 for tx in self._ledger.unresolved() if self._mixer.resume(tx, now))
            if self._config.enable_automated_mixing:
                self._cycles.start()
            self._commit()
        logger.info(
            "engine_started",
            resumed=resumed,
            automated_mixing=self._config.enable_automated_mixing,
        )

    def stop(self) -> None:
        """
        Cancel every pending timer, flush a final snapshot and silence listeners.
        In-flight transactions keep their last committed status; start() on a new
        engine over the same store resumes them.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            cancelled = self._mixer.stop()
            self._cycles.stop()
            self._status.mute()
            self._persist()
        # outside the lock: the worker may be waiting on it
        self._scheduler.shutdown()
        logger.info("engine_stopped", cancelled_timers=cancelled)

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    def _ensure_running(self) -> None:
        if self._stopped:
            raise EngineStopped("fee routing engine has been stopped")

    # --- commit ----------------------------------------------------------

    def _commit(self) -> None:
        """After every mutation: refresh counters, persist, notify."""
        self._status.set_active_wallets(self._pool.active_count())
        self._persist()
        if not self._stopped:
            self._status.notify()

    def _persist(self) -> None:
        snapshot = Snapshot(
            wallets=self._pool.snapshot(),
            transactions=self._ledger.snapshot(),
            status=self._status.snapshot(),
        )
        try:
            self._repo.save(snapshot)
        except PersistenceFailure as e:
            logger.error("persistence_save_failed", error=str(e))
        except Exception as e:
            logger.exception("persistence_save_failed", error=str(e))

    # --- public API ------------------------------------------------------

    def route_fee(self, source_transaction_id: str, amount: Any) -> str:
        """
        Accept a fee for routing. Returns the new fee transaction id.
        Raises InvalidAmount for a non-positive or non-numeric amount.
        """
        value = parse_amount(amount)
        source = str(source_transaction_id)
        with self._lock:
            self._ensure_running()
            now = self._scheduler.now()
            tx = self._ledger.create_transaction(source, value, now)
            self._status.record_collected(value)
            self._mixer.schedule(tx)
            self._commit()
        logger.info(
            "fee_routed",
            transaction_id=tx.id,
            source_transaction_id=source,
            amount=str(value),
            mixing_rounds=tx.mixing_rounds,
            delay_minutes=tx.delay_minutes,
        )
        return tx.id

    def get_routing_status(self) -> RoutingStatus:
        with self._lock:
            return self._status.snapshot()

    def get_fee_transaction_status(self, transaction_id: str) -> FeeTransaction | None:
        with self._lock:
            return self._ledger.find(transaction_id)

    def require_fee_transaction(self, transaction_id: str) -> FeeTransaction:
        """Like get_fee_transaction_status but raises TransactionNotFound."""
        tx = self.get_fee_transaction_status(transaction_id)
        if tx is None:
            raise TransactionNotFound(transaction_id)
        return tx

    def get_vendor_fee_summary(self, fragment: str) -> VendorFeeSummary:
        with self._lock:
            return self._ledger.vendor_summary(fragment)

    def subscribe(self, listener: StatusListener) -> Subscription:
        return self._status.subscribe(listener)

    def get_config(self) -> MixingConfig:
        return self._config

    def update_config(self, partial: Mapping[str, Any] | None = None, **changes: Any) -> MixingConfig:
        """
        Merge a partial config. In-flight transactions keep their drawn rounds
        and delays. Toggling enable_automated_mixing starts/stops the cycle timer.
        """
        merged_changes = dict(partial or {})
        merged_changes.update(changes)
        with self._lock:
            self._ensure_running()
            new_config = self._config.merged(merged_changes)
            previous = self._config
            self._config = new_config
            if "enable_automated_mixing" in merged_changes:
                if new_config.enable_automated_mixing and not self._cycles.running and self._started:
                    self._cycles.start()
                elif not new_config.enable_automated_mixing and self._cycles.running:
                    self._cycles.stop()
            elif self._cycles.running and new_config.cycle_interval_sec != previous.cycle_interval_sec:
                self._cycles.stop()
                self._cycles.start()
            self._commit()
        logger.info("config_updated", changes=sorted(merged_changes))
        return new_config

    def execute_cycle(self) -> CycleReport:
        """Run one retirement sweep now, independent of the periodic timer."""
        with self._lock:
            self._ensure_running()
            report = self._cycles.run_cycle()
            self._commit()
        return report

    def reconcile(self) -> ConservationReport:
        """Audit the aggregate against the ledger and the wallet balances."""
        with self._lock:
            return self._status.reconcile(self._ledger.collected_total(), self._pool.total_balance())

    # --- introspection (reporting, tests) --------------------------------

    def list_transactions(self) -> list[FeeTransaction]:
        with self._lock:
            return self._ledger.transactions()

    def list_wallets(self) -> list[ShellWallet]:
        with self._lock:
            return self._pool.wallets()

    @property
    def in_flight(self) -> int:
        return self._mixer.in_flight

    @property
    def cycle_running(self) -> bool:
        return self._cycles.running
