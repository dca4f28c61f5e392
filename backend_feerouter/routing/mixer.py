"""
Mixing scheduler: drives each fee through its hop sequence on timers.

Per transaction the steps are chained, each one armed only by the previous:

    start (after delay_minutes) -> hop 1 .. hop N (inter-round delay) ->
    dispersal (right after hop N) -> completion (after final delay)

Every step runs under the engine lock and ends with a commit (snapshot +
notify), so hop k+1 never starts before hop k is committed. A hop moves the
balance and reassigns shell_wallet_id as one unit: if the reassignment fails
the transfer is undone. If a step raises, the transaction goes to failed and
its funds stay at the last wallet that was successfully reached.
"""

from __future__ import annotations

import random
import threading
from typing import Callable

from backend_feerouter.config import MixingConfig
from backend_feerouter.core.exceptions import MixingFailure
from backend_feerouter.database.models import FeeStatus, FeeTransaction
from backend_feerouter.logging import bind_transaction, get_logger
from backend_feerouter.routing import addresses
from backend_feerouter.routing.fee_ledger import FeeLedger
from backend_feerouter.routing.status import StatusReporter
from backend_feerouter.routing.wallet_pool import WalletPool
from backend_feerouter.scheduler import Scheduler, TimerHandle

logger = get_logger(__name__)

Step = Callable[[FeeTransaction], None]


def _log(tx_id: str):
    return bind_transaction(tx_id, __name__)


class MixingScheduler:
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
    ) -> None:
        self._pool = pool
        self._ledger = ledger
        self._status = status
        self._scheduler = scheduler
        self._config = config
        self._rng = rng
        self._lock = lock
        self._commit = commit
        self._timers: dict[str, TimerHandle] = {}
        self._stopped = False

    # --- arming ----------------------------------------------------------

    def schedule(self, tx: FeeTransaction) -> None:
        """Arm the start of mixing for a freshly created transaction."""
        self._arm(tx.id, tx.delay_minutes * 60.0, self._start)

    def resume(self, tx: FeeTransaction, now: float) -> bool:
        """
        Re-arm the next step of an unresolved transaction after a restart.
        Returns False when the transaction already has an armed step or is terminal.
        """
        if self.is_armed(tx.id):
            return False
        if tx.status is FeeStatus.PENDING:
            remaining = tx.timestamp + tx.delay_minutes * 60.0 - now
            self._arm(tx.id, max(0.0, remaining), self._start)
        elif tx.status is FeeStatus.MIXING:
            if tx.hops_completed >= tx.mixing_rounds:
                self._arm(tx.id, 0.0, self._disperse)
            else:
                self._arm(tx.id, self._round_delay(), self._hop)
        elif tx.status is FeeStatus.DISPERSED:
            self._arm(tx.id, self._final_delay(), self._complete)
        else:
            return False
        _log(tx.id).info(
            "mixing_resumed",
            status=tx.status.value,
            hops_completed=tx.hops_completed,
            mixing_rounds=tx.mixing_rounds,
        )
        return True

    def is_armed(self, tx_id: str) -> bool:
        with self._lock:
            handle = self._timers.get(tx_id)
            return handle is not None and not handle.cancelled

    def cancel(self, tx_id: str) -> bool:
        """Drop the armed step of one transaction. Returns whether one was armed."""
        with self._lock:
            handle = self._timers.pop(tx_id, None)
            if handle is None or handle.cancelled:
                return False
            handle.cancel()
            return True

    def _arm(self, tx_id: str, delay: float, step: Step) -> None:
        if self._stopped:
            return
        # one armed step per transaction
        self.cancel(tx_id)
        handle = self._scheduler.call_later(
            delay,
            lambda: self._run_step(tx_id, step),
            name=f"{step.__name__.lstrip('_')}:{tx_id}",
        )
        self._timers[tx_id] = handle

    def _round_delay(self) -> float:
        cfg = self._config()
        return float(self._rng.randint(cfg.min_round_delay_sec, cfg.max_round_delay_sec))

    def _final_delay(self) -> float:
        cfg = self._config()
        return float(self._rng.randint(cfg.min_final_delay_sec, cfg.max_final_delay_sec))

    @property
    def in_flight(self) -> int:
        """Transactions with an armed timer."""
        with self._lock:
            return sum(1 for h in self._timers.values() if not h.cancelled)

    # --- step execution --------------------------------------------------

    def _run_step(self, tx_id: str, step: Step) -> None:
        with self._lock:
            self._timers.pop(tx_id, None)
            if self._stopped:
                return
            tx = self._ledger.find(tx_id)
            if tx is None:
                logger.warning("mixing_step_unknown_transaction", transaction_id=tx_id)
                return
            try:
                step(tx)
            except MixingFailure as e:
                self._fail(tx_id, str(e))
            except Exception as e:
                _log(tx_id).exception("mixing_step_error", step=step.__name__)
                self._fail(tx_id, f"{type(e).__name__}: {e}")
            self._commit()

    def _fail(self, tx_id: str, reason: str) -> None:
        tx = self._ledger.get(tx_id)
        if tx.status not in (FeeStatus.PENDING, FeeStatus.MIXING):
            _log(tx_id).error("mixing_failure_after_dispersal", status=tx.status.value, reason=reason)
            return
        now = self._scheduler.now()
        self._ledger.transition(tx_id, FeeStatus.FAILED, now, reason=reason)
        _log(tx_id).error(
            "mixing_failed",
            shell_wallet_id=tx.shell_wallet_id,
            hops_completed=tx.hops_completed,
            amount=tx.amount,
            reason=reason,
        )

    def _start(self, tx: FeeTransaction) -> None:
        if tx.status is not FeeStatus.PENDING:
            return
        self._ledger.transition(tx.id, FeeStatus.MIXING, self._scheduler.now())
        _log(tx.id).info("mixing_started", mixing_rounds=tx.mixing_rounds)
        self._hop(self._ledger.get(tx.id))

    def _hop(self, tx: FeeTransaction) -> None:
        if tx.status is not FeeStatus.MIXING:
            return
        now = self._scheduler.now()
        source_id = tx.shell_wallet_id
        target = self._pool.hop(source_id, tx.amount, now)
        try:
            tx = self._ledger.record_hop(tx.id, target.id, now)
        except Exception:
            self._pool.undo_hop(source_id, target.id, tx.amount, now)
            raise
        _log(tx.id).debug(
            "mixing_hop_done",
            hop=tx.hops_completed,
            mixing_rounds=tx.mixing_rounds,
            shell_wallet_id=target.id,
        )
        if tx.hops_completed >= tx.mixing_rounds:
            self._disperse(tx)
        else:
            self._arm(tx.id, self._round_delay(), self._hop)

    def _disperse(self, tx: FeeTransaction) -> None:
        if tx.status is not FeeStatus.MIXING:
            return
        now = self._scheduler.now()
        destination = addresses.destination_address(self._rng)
        self._pool.debit(tx.shell_wallet_id, tx.amount, now)
        self._status.record_dispersal(tx.amount)
        self._ledger.set_destination(tx.id, destination, now)
        self._ledger.transition(tx.id, FeeStatus.DISPERSED, now)
        _log(tx.id).info("fee_dispersed", amount=tx.amount, hops=tx.hops_completed)
        self._arm(tx.id, self._final_delay(), self._complete)

    def _complete(self, tx: FeeTransaction) -> None:
        if tx.status is not FeeStatus.DISPERSED:
            return
        self._ledger.transition(tx.id, FeeStatus.COMPLETED, self._scheduler.now())
        _log(tx.id).info("fee_completed")

    # --- shutdown --------------------------------------------------------

    def stop(self) -> int:
        """Cancel every armed timer; nothing is armed afterwards. Returns timers cancelled."""
        with self._lock:
            self._stopped = True
            cancelled = 0
            for handle in self._timers.values():
                if not handle.cancelled:
                    handle.cancel()
                    cancelled += 1
            self._timers.clear()
        return cancelled
