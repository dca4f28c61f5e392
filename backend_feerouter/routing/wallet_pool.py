"""
Shell wallet pool: create, select, move funds between, retire and collect wallets.

Balances only change through credit (fee enters the pool), transfer and hop
(exactly two wallets) and debit (funds leave the pool on dispersal). Each of
these validates everything before touching a balance, so a failed call leaves
the pool unchanged and no balance is ever negative.
"""

from __future__ import annotations

import math
import random
from decimal import Decimal
from typing import Callable

from backend_feerouter.config import MixingConfig
from backend_feerouter.core.exceptions import HopFailure, WalletNotEmpty, WalletNotFound
from backend_feerouter.database.models import ZERO, ShellWallet
from backend_feerouter.logging import get_logger
from backend_feerouter.routing import addresses

logger = get_logger(__name__)


def cycle_number(now: float, cycle_interval_sec: float) -> int:
    """Epoch index of now for the given cycle length."""
    return int(math.floor(now / cycle_interval_sec))


def age_in_cycles(wallet: ShellWallet, now: float, cycle_interval_sec: float) -> int:
    """
    Whole cycles between the wallet's creation and now, counted in the current
    cycle length. The stored cycle_number is not used here: it was computed with
    the interval in force at creation, which may have changed since.
    """
    return cycle_number(now, cycle_interval_sec) - cycle_number(wallet.created_at, cycle_interval_sec)


class WalletPool:
    """Owns every shell wallet; callers get copies, never live objects."""

    def __init__(self, config: Callable[[], MixingConfig], rng: random.Random) -> None:
        self._config = config
        self._rng = rng
        self._wallets: dict[str, ShellWallet] = {}
        self._active_count = 0

    # --- selection -------------------------------------------------------

    def acquire_wallet(self, now: float) -> ShellWallet:
        """
        Return an active wallet below max_wallet_balance, creating one if none qualifies.

        Wallets the next retirement sweep would retire are skipped.
        """
        cfg = self._config()
        for wallet in self._wallets.values():
            if not wallet.is_active or wallet.balance >= cfg.max_wallet_balance:
                continue
            if age_in_cycles(wallet, now, cfg.cycle_interval_sec) >= cfg.retirement_age_cycles:
                continue
            return wallet.copy()
        return self.create_wallet(now)

    def create_wallet(self, now: float) -> ShellWallet:
        wallet_id = addresses.wallet_id(self._rng, now)
        while wallet_id in self._wallets:
            wallet_id = addresses.wallet_id(self._rng, now)
        wallet = ShellWallet(
            id=wallet_id,
            address=addresses.shell_address(self._rng),
            balance=ZERO,
            created_at=now,
            last_used=now,
            is_active=True,
            cycle_number=cycle_number(now, self._config().cycle_interval_sec),
        )
        self._wallets[wallet.id] = wallet
        self._active_count += 1
        logger.debug("shell_wallet_created", wallet_id=wallet.id, cycle_number=wallet.cycle_number)
        return wallet.copy()

    # --- balance movements ----------------------------------------------

    def _live(self, wallet_id: str) -> ShellWallet:
        wallet = self._wallets.get(wallet_id)
        if wallet is None:
            raise WalletNotFound(wallet_id)
        return wallet

    def credit(self, wallet_id: str, amount: Decimal, now: float) -> None:
        """Fee enters the pool."""
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        wallet = self._live(wallet_id)
        wallet.balance += amount
        wallet.last_used = now

    def _hop_source(self, source_id: str, amount: Decimal) -> ShellWallet:
        if amount <= 0:
            raise HopFailure(f"hop amount must be positive, got {amount}")
        source = self._wallets.get(source_id)
        if source is None:
            raise HopFailure(f"hop source wallet missing: {source_id}")
        if source.balance < amount:
            raise HopFailure(
                f"hop source {source_id} holds {source.balance}, needs {amount}"
            )
        return source

    @staticmethod
    def _move(source: ShellWallet, dest: ShellWallet, amount: Decimal, now: float) -> None:
        source.balance -= amount
        dest.balance += amount
        source.last_used = now
        dest.last_used = now

    def transfer(self, source_id: str, dest_id: str, amount: Decimal, now: float) -> None:
        """
        One hop: debit source and credit dest by the same amount.
        Raises HopFailure without mutating anything when the hop cannot be applied.
        """
        if source_id == dest_id:
            raise HopFailure(f"hop source and destination are the same wallet: {source_id}")
        source = self._hop_source(source_id, amount)
        dest = self._wallets.get(dest_id)
        if dest is None:
            raise HopFailure(f"hop destination wallet missing: {dest_id}")
        self._move(source, dest, amount, now)

    def hop(self, source_id: str, amount: Decimal, now: float) -> ShellWallet:
        """
        Move amount from source into a freshly created wallet and return it.
        The source is checked first; a rejected hop creates no wallet.
        """
        source = self._hop_source(source_id, amount)
        target = self.create_wallet(now)
        self._move(source, self._wallets[target.id], amount, now)
        return self._wallets[target.id].copy()

    def undo_hop(self, source_id: str, target_id: str, amount: Decimal, now: float) -> None:
        """Return a hop's amount to its source and retire the then empty target."""
        self.transfer(target_id, source_id, amount, now)
        self.retire_wallet(target_id)
        logger.warning("hop_rolled_back", source_wallet_id=source_id, target_wallet_id=target_id)

    def debit(self, wallet_id: str, amount: Decimal, now: float) -> None:
        """Funds leave the pool (dispersal). Deactivates the wallet once it is empty."""
        wallet = self._wallets.get(wallet_id)
        if wallet is None:
            raise HopFailure(f"dispersal wallet missing: {wallet_id}")
        if amount <= 0 or wallet.balance < amount:
            raise HopFailure(
                f"dispersal of {amount} from {wallet_id} exceeds balance {wallet.balance}"
            )
        wallet.balance -= amount
        wallet.last_used = now
        if wallet.balance == 0:
            self._deactivate(wallet)

    # --- retirement ------------------------------------------------------

    def _deactivate(self, wallet: ShellWallet) -> None:
        if wallet.is_active:
            wallet.is_active = False
            self._active_count -= 1

    def retire_wallet(self, wallet_id: str) -> None:
        """Mark a wallet inactive. The wallet must be empty; force-disperse first otherwise."""
        wallet = self._live(wallet_id)
        if wallet.balance > 0:
            raise WalletNotEmpty(f"wallet {wallet_id} still holds {wallet.balance}")
        self._deactivate(wallet)

    def collect_garbage(self, now: float, retention_sec: float) -> list[str]:
        """Remove wallets that are inactive, empty and unused for longer than retention_sec."""
        cutoff = now - retention_sec
        removed = [
            w.id
            for w in self._wallets.values()
            if not w.is_active and w.balance == 0 and w.last_used < cutoff
        ]
        for wallet_id in removed:
            del self._wallets[wallet_id]
        return removed

    # --- reads -----------------------------------------------------------

    def find(self, wallet_id: str) -> ShellWallet | None:
        wallet = self._wallets.get(wallet_id)
        return wallet.copy() if wallet else None

    def wallets(self) -> list[ShellWallet]:
        return [w.copy() for w in self._wallets.values()]

    def active_count(self) -> int:
        return self._active_count

    def total_balance(self) -> Decimal:
        return sum((w.balance for w in self._wallets.values()), ZERO)

    def __len__(self) -> int:
        return len(self._wallets)

    # --- persistence -----------------------------------------------------

    def snapshot(self) -> dict[str, ShellWallet]:
        return {k: w.copy() for k, w in self._wallets.items()}

    def restore(self, wallets: dict[str, ShellWallet]) -> None:
        self._wallets = {k: w.copy() for k, w in wallets.items()}
        self._active_count = sum(1 for w in self._wallets.values() if w.is_active)
