"""
Tests for the shell wallet pool (routing.wallet_pool.WalletPool).

Pool is driven directly with a seeded RNG; no engine, no scheduler. Covers
inbound wallet selection and rotation, hop transfers that fail without
mutating, dispersal debits, retirement and garbage collection.
"""

from __future__ import annotations

import random
from decimal import Decimal

import pytest

from backend_feerouter.config import MixingConfig
from backend_feerouter.core.exceptions import HopFailure, WalletNotEmpty, WalletNotFound
from backend_feerouter.routing import addresses
from backend_feerouter.routing.wallet_pool import WalletPool, age_in_cycles, cycle_number

T0 = 1_700_000_000.0
DAY = 86400.0
CYCLE = 6 * 3600.0


def _pool(**config) -> WalletPool:
    cfg = MixingConfig(**config)
    return WalletPool(lambda: cfg, random.Random(3))


def _balances(pool: WalletPool) -> dict[str, Decimal]:
    return {w.id: w.balance for w in pool.wallets()}


def test_cycle_number_floors_epoch():
    assert cycle_number(T0, 21600.0) == 78703
    assert cycle_number(21600.0 * 5, 21600.0) == 5
    assert cycle_number(21600.0 * 5 - 0.001, 21600.0) == 4


def test_acquire_creates_wallet_when_pool_empty():
    pool = _pool()
    wallet = pool.acquire_wallet(T0)
    assert len(pool) == 1
    assert wallet.balance == 0
    assert wallet.is_active
    assert wallet.cycle_number == 78703
    assert pool.active_count() == 1


def test_acquire_reuses_wallet_below_max_balance():
    pool = _pool(max_wallet_balance="0.1")
    first = pool.acquire_wallet(T0)
    pool.credit(first.id, Decimal("0.05"), T0)
    again = pool.acquire_wallet(T0 + 1)
    assert again.id == first.id
    assert len(pool) == 1


def test_acquire_rotates_wallet_at_max_balance():
    pool = _pool(max_wallet_balance="0.1")
    first = pool.acquire_wallet(T0)
    pool.credit(first.id, Decimal("0.1"), T0)
    second = pool.acquire_wallet(T0 + 1)
    assert second.id != first.id
    assert len(pool) == 2
    assert pool.active_count() == 2


def test_acquire_skips_wallets_due_for_retirement():
    pool = _pool(max_wallet_balance="0.1")
    first = pool.acquire_wallet(T0)
    pool.credit(first.id, Decimal("0.01"), T0)
    assert pool.acquire_wallet(T0 + CYCLE).id == first.id
    # two cycles old: the next sweep retires it
    fresh = pool.acquire_wallet(T0 + 2 * CYCLE)
    assert fresh.id != first.id
    assert fresh.cycle_number == 78705


def test_age_in_cycles_uses_current_interval():
    pool = _pool()
    wallet = pool.create_wallet(T0)
    assert wallet.cycle_number == 78703
    assert age_in_cycles(wallet, T0 + CYCLE, CYCLE) == 1
    # one hour later in one-hour cycles is at most one cycle, whatever was stored
    assert age_in_cycles(wallet, T0 + 3600, 3600.0) == 1


def test_hop_moves_amount_into_new_wallet():
    pool = _pool()
    a = pool.create_wallet(T0)
    pool.credit(a.id, Decimal("0.3"), T0)
    target = pool.hop(a.id, Decimal("0.3"), T0 + 5)
    assert target.id != a.id
    assert target.balance == Decimal("0.3")
    assert pool.find(a.id).balance == 0
    assert len(pool) == 2


def test_rejected_hop_creates_no_wallet():
    pool = _pool()
    a = pool.create_wallet(T0)
    pool.credit(a.id, Decimal("0.2"), T0)
    with pytest.raises(HopFailure):
        pool.hop(a.id, Decimal("0.3"), T0 + 5)
    with pytest.raises(HopFailure):
        pool.hop("shell_missing", Decimal("0.1"), T0 + 5)
    assert len(pool) == 1
    assert pool.active_count() == 1
    assert pool.find(a.id).balance == Decimal("0.2")


def test_undo_hop_restores_source_and_retires_target():
    pool = _pool()
    a = pool.create_wallet(T0)
    pool.credit(a.id, Decimal("0.2"), T0)
    target = pool.hop(a.id, Decimal("0.2"), T0 + 5)
    pool.undo_hop(a.id, target.id, Decimal("0.2"), T0 + 5)
    assert pool.find(a.id).balance == Decimal("0.2")
    assert pool.find(target.id).balance == 0
    assert not pool.find(target.id).is_active
    assert pool.active_count() == 1


def test_transfer_moves_exact_amount():
    pool = _pool()
    a = pool.create_wallet(T0)
    b = pool.create_wallet(T0)
    pool.credit(a.id, Decimal("0.3"), T0)
    pool.transfer(a.id, b.id, Decimal("0.3"), T0 + 5)
    assert pool.find(a.id).balance == 0
    assert pool.find(b.id).balance == Decimal("0.3")
    assert pool.find(b.id).last_used == T0 + 5
    assert pool.total_balance() == Decimal("0.3")


@pytest.mark.parametrize(
    "amount,source_balance",
    [
        (Decimal("0.5"), Decimal("0.4")),
        (Decimal("0"), Decimal("0.4")),
        (Decimal("-1"), Decimal("0.4")),
    ],
)
def test_transfer_rejected_without_mutation(amount, source_balance):
    pool = _pool()
    a = pool.create_wallet(T0)
    b = pool.create_wallet(T0)
    pool.credit(a.id, source_balance, T0)
    before = _balances(pool)
    with pytest.raises(HopFailure):
        pool.transfer(a.id, b.id, amount, T0 + 1)
    assert _balances(pool) == before


def test_transfer_same_wallet_or_missing_wallet_fails():
    pool = _pool()
    a = pool.create_wallet(T0)
    pool.credit(a.id, Decimal("1"), T0)
    with pytest.raises(HopFailure):
        pool.transfer(a.id, a.id, Decimal("1"), T0)
    with pytest.raises(HopFailure):
        pool.transfer(a.id, "shell_missing", Decimal("1"), T0)
    with pytest.raises(HopFailure):
        pool.transfer("shell_missing", a.id, Decimal("1"), T0)
    assert pool.find(a.id).balance == Decimal("1")


def test_debit_to_zero_deactivates_once():
    pool = _pool()
    a = pool.create_wallet(T0)
    pool.credit(a.id, Decimal("0.2"), T0)
    pool.debit(a.id, Decimal("0.2"), T0 + 10)
    wallet = pool.find(a.id)
    assert wallet.balance == 0
    assert not wallet.is_active
    assert pool.active_count() == 0
    # retiring an already inactive wallet does not decrement again
    pool.retire_wallet(a.id)
    assert pool.active_count() == 0


def test_debit_more_than_balance_fails():
    pool = _pool()
    a = pool.create_wallet(T0)
    pool.credit(a.id, Decimal("0.2"), T0)
    with pytest.raises(HopFailure):
        pool.debit(a.id, Decimal("0.3"), T0)
    assert pool.find(a.id).balance == Decimal("0.2")
    assert pool.find(a.id).is_active


def test_retire_wallet_with_balance_raises():
    pool = _pool()
    a = pool.create_wallet(T0)
    pool.credit(a.id, Decimal("0.01"), T0)
    with pytest.raises(WalletNotEmpty):
        pool.retire_wallet(a.id)
    with pytest.raises(WalletNotFound):
        pool.retire_wallet("shell_missing")


def test_collect_garbage_respects_retention():
    pool = _pool()
    old = pool.create_wallet(T0)
    recent = pool.create_wallet(T0 + 6 * DAY)
    active = pool.create_wallet(T0)
    pool.retire_wallet(old.id)
    pool.retire_wallet(recent.id)
    removed = pool.collect_garbage(T0 + 8 * DAY, 7 * DAY)
    assert removed == [old.id]
    assert pool.find(old.id) is None
    assert pool.find(recent.id) is not None
    assert pool.find(active.id) is not None


def test_reads_return_copies():
    pool = _pool()
    a = pool.create_wallet(T0)
    copy = pool.find(a.id)
    copy.balance = Decimal("99")
    copy.is_active = False
    assert pool.find(a.id).balance == 0
    assert pool.find(a.id).is_active


def test_restore_recomputes_active_count():
    pool = _pool()
    a = pool.create_wallet(T0)
    pool.create_wallet(T0)
    pool.retire_wallet(a.id)
    other = _pool()
    other.restore(pool.snapshot())
    assert other.active_count() == 1
    assert len(other) == 2


def test_synthetic_address_formats():
    rng = random.Random(11)
    shell = addresses.shell_address(rng)
    dest = addresses.destination_address(rng)
    assert shell.startswith("1") and len(shell) == 34
    assert all(c in addresses.BASE58_ALPHABET for c in shell[1:])
    assert dest.startswith("bc1") and len(dest) == 42
    assert all(c in addresses.BECH32_ALPHABET for c in dest[3:])
    assert addresses.transaction_id(rng, T0).startswith("tx_")
    assert addresses.wallet_id(rng, T0).startswith("shell_")
