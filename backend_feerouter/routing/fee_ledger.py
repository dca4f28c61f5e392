"""
Fee ledger: one FeeTransaction per routed fee, plus the status state machine.

Transactions are never deleted. Status only moves along
pending -> mixing -> dispersed -> completed, with failed reachable from
pending or mixing; any other change raises InvalidTransition.
"""

from __future__ import annotations

import random
from decimal import Decimal
from typing import Callable

from backend_feerouter.config import MixingConfig
from backend_feerouter.core.exceptions import InvalidAmount, InvalidTransition, TransactionNotFound
from backend_feerouter.database.models import (
    ALLOWED_TRANSITIONS,
    CYCLE_CLEANUP_SOURCE,
    FeeStatus,
    FeeTransaction,
    VendorFeeSummary,
    ZERO,
)
from backend_feerouter.logging import get_logger
from backend_feerouter.routing import addresses
from backend_feerouter.routing.wallet_pool import WalletPool

logger = get_logger(__name__)


class FeeLedger:
    def __init__(
        self,
        pool: WalletPool,
        config: Callable[[], MixingConfig],
        rng: random.Random,
    ) -> None:
        self._pool = pool
        self._config = config
        self._rng = rng
        self._transactions: dict[str, FeeTransaction] = {}

    def _new_id(self, now: float) -> str:
        tx_id = addresses.transaction_id(self._rng, now)
        while tx_id in self._transactions:
            tx_id = addresses.transaction_id(self._rng, now)
        return tx_id

    def create_transaction(self, source_id: str, amount: Decimal, now: float) -> FeeTransaction:
        """
        Record a new fee in pending state.

        Assigns an inbound wallet from the pool and credits it with the fee;
        mixing_rounds and delay_minutes are drawn (inclusive) from the current
        config. Raises InvalidAmount for amount <= 0.
        """
        if amount <= 0:
            raise InvalidAmount(f"fee amount must be positive, got {amount}")
        cfg = self._config()
        wallet = self._pool.acquire_wallet(now)
        tx = FeeTransaction(
            id=self._new_id(now),
            source_transaction_id=source_id,
            amount=amount,
            shell_wallet_id=wallet.id,
            timestamp=now,
            status=FeeStatus.PENDING,
            mixing_rounds=self._rng.randint(cfg.min_mixing_rounds, cfg.max_mixing_rounds),
            delay_minutes=self._rng.randint(cfg.min_delay_minutes, cfg.max_delay_minutes),
            updated_at=now,
        )
        self._pool.credit(wallet.id, amount, now)
        self._transactions[tx.id] = tx
        return tx.copy()

    # --- lookups ---------------------------------------------------------

    def _live(self, tx_id: str) -> FeeTransaction:
        tx = self._transactions.get(tx_id)
        if tx is None:
            raise TransactionNotFound(tx_id)
        return tx

    def get(self, tx_id: str) -> FeeTransaction:
        """Copy of the transaction; raises TransactionNotFound."""
        return self._live(tx_id).copy()

    def find(self, tx_id: str) -> FeeTransaction | None:
        tx = self._transactions.get(tx_id)
        return tx.copy() if tx else None

    def transactions(self) -> list[FeeTransaction]:
        return [t.copy() for t in self._transactions.values()]

    def unresolved(self) -> list[FeeTransaction]:
        """Non-terminal transactions, oldest first."""
        pending = [t.copy() for t in self._transactions.values() if not t.is_terminal]
        pending.sort(key=lambda t: t.timestamp)
        return pending

    def holders(self, wallet_id: str) -> list[FeeTransaction]:
        """Pending or mixing transactions whose funds sit in wallet_id."""
        return [
            t.copy()
            for t in self._transactions.values()
            if t.shell_wallet_id == wallet_id and t.status in (FeeStatus.PENDING, FeeStatus.MIXING)
        ]

    def __len__(self) -> int:
        return len(self._transactions)

    # --- mutations (mixing scheduler and cycle manager only) --------------

    def transition(
        self,
        tx_id: str,
        new_status: FeeStatus,
        now: float,
        *,
        reason: str | None = None,
    ) -> FeeTransaction:
        tx = self._live(tx_id)
        if new_status not in ALLOWED_TRANSITIONS[tx.status]:
            raise InvalidTransition(
                f"{tx_id}: {tx.status.value} -> {new_status.value} not allowed"
            )
        previous = tx.status
        tx.status = new_status
        tx.updated_at = now
        if new_status is FeeStatus.FAILED:
            tx.failure_reason = reason
        logger.debug(
            "fee_status_changed",
            transaction_id=tx_id,
            from_status=previous.value,
            to_status=new_status.value,
        )
        return tx.copy()

    def record_hop(self, tx_id: str, wallet_id: str, now: float) -> FeeTransaction:
        tx = self._live(tx_id)
        tx.shell_wallet_id = wallet_id
        tx.hops_completed += 1
        tx.updated_at = now
        return tx.copy()

    def set_destination(self, tx_id: str, destination: str, now: float) -> None:
        tx = self._live(tx_id)
        tx.destination_address = destination
        tx.updated_at = now

    def record_forced_dispersal(
        self,
        wallet_id: str,
        amount: Decimal,
        destination: str,
        now: float,
    ) -> FeeTransaction:
        """
        Audit record for a balance force-dispersed by the retirement sweep.

        Walked through every status up to completed so the record's history
        never skips a state; it is never scheduled.
        """
        tx = FeeTransaction(
            id=self._new_id(now),
            source_transaction_id=CYCLE_CLEANUP_SOURCE,
            amount=amount,
            shell_wallet_id=wallet_id,
            timestamp=now,
            status=FeeStatus.PENDING,
            mixing_rounds=1,
            delay_minutes=0,
            updated_at=now,
        )
        self._transactions[tx.id] = tx
        self.transition(tx.id, FeeStatus.MIXING, now)
        tx.hops_completed = 1
        self.set_destination(tx.id, destination, now)
        self.transition(tx.id, FeeStatus.DISPERSED, now)
        return self.transition(tx.id, FeeStatus.COMPLETED, now)

    def settle_forced_dispersal(self, tx_id: str, destination: str, now: float) -> FeeTransaction:
        """Complete a pending or mixing fee whose wallet balance was force-dispersed."""
        tx = self._live(tx_id)
        if tx.status is FeeStatus.PENDING:
            self.transition(tx_id, FeeStatus.MIXING, now)
        self.set_destination(tx_id, destination, now)
        self.transition(tx_id, FeeStatus.DISPERSED, now)
        tx = self.transition(tx_id, FeeStatus.COMPLETED, now)
        logger.info("fee_settled_by_cycle", transaction_id=tx_id, amount=tx.amount)
        return tx

    # --- reporting -------------------------------------------------------

    def vendor_summary(self, fragment: str) -> VendorFeeSummary:
        """
        Linear scan: every transaction whose source reference contains fragment.
        Reporting convenience, not a keyed lookup.
        """
        summary = VendorFeeSummary()
        for tx in self._transactions.values():
            if fragment in tx.source_transaction_id:
                summary.total_fees += tx.amount
                summary.transactions_count += 1
                summary.last_fee_time = max(summary.last_fee_time, tx.timestamp)
        return summary

    def collected_total(self) -> Decimal:
        """Sum of every routed fee; cycle-cleanup audit records are not new money."""
        return sum(
            (t.amount for t in self._transactions.values() if t.source_transaction_id != CYCLE_CLEANUP_SOURCE),
            ZERO,
        )

    # --- persistence -----------------------------------------------------

    def snapshot(self) -> dict[str, FeeTransaction]:
        return {k: t.copy() for k, t in self._transactions.items()}

    def restore(self, transactions: dict[str, FeeTransaction]) -> None:
        self._transactions = {k: t.copy() for k, t in transactions.items()}
