"""
Tests for the mixing scheduler driven through FeeRoutingEngine on a virtual clock.

fast_config timeline for a fee routed at T0:
  T0+1800 mixing + hop 1, T0+1810 hop 2, T0+1820 hop 3 + dispersed, T0+1880 completed.
Hop failures are injected by patching the engine's wallet pool or ledger.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

from conftest import T0, assert_conserved

from backend_feerouter.core.exceptions import HopFailure
from backend_feerouter.database.models import FeeStatus

ORDER = {
    FeeStatus.PENDING: 0,
    FeeStatus.MIXING: 1,
    FeeStatus.DISPERSED: 2,
    FeeStatus.COMPLETED: 3,
    FeeStatus.FAILED: 3,
}


def _status(engine, tx_id):
    return engine.get_fee_transaction_status(tx_id).status


def test_full_hop_sequence(engine, scheduler):
    tx_id = engine.route_fee("escrow-1", "0.05")
    tx = engine.get_fee_transaction_status(tx_id)
    inbound = tx.shell_wallet_id
    assert tx.status is FeeStatus.PENDING
    assert tx.mixing_rounds == 3
    assert tx.delay_minutes == 30

    scheduler.advance(1799)
    assert _status(engine, tx_id) is FeeStatus.PENDING

    scheduler.advance(1)
    tx = engine.get_fee_transaction_status(tx_id)
    assert tx.status is FeeStatus.MIXING
    assert tx.hops_completed == 1
    assert tx.shell_wallet_id != inbound

    scheduler.advance(10)
    assert engine.get_fee_transaction_status(tx_id).hops_completed == 2
    assert_conserved(engine)

    scheduler.advance(10)
    tx = engine.get_fee_transaction_status(tx_id)
    assert tx.status is FeeStatus.DISPERSED
    assert tx.hops_completed == 3
    assert tx.destination_address.startswith("bc1")
    status = engine.get_routing_status()
    assert status.fees_dispersed == Decimal("0.05")
    assert status.fees_in_mixing == 0

    scheduler.advance(60)
    tx = engine.get_fee_transaction_status(tx_id)
    assert tx.status is FeeStatus.COMPLETED
    assert tx.updated_at == T0 + 1880
    assert engine.in_flight == 0
    assert_conserved(engine)


def test_each_hop_uses_fresh_wallet(engine, scheduler):
    tx_id = engine.route_fee("escrow-1", "0.05")
    holders = [engine.get_fee_transaction_status(tx_id).shell_wallet_id]
    for step in (1800, 10, 10):
        scheduler.advance(step)
        holders.append(engine.get_fee_transaction_status(tx_id).shell_wallet_id)
    assert len(set(holders)) == 4
    # inbound + 3 hop wallets
    assert len(engine.list_wallets()) == 4


def test_statuses_move_forward_only(engine, scheduler):
    seen: list[FeeStatus] = []
    tx_ids: list[str] = []

    def listener(_status):
        if tx_ids:
            seen.append(engine.get_fee_transaction_status(tx_ids[0]).status)

    engine.subscribe(listener)
    tx_ids.append(engine.route_fee("escrow-1", "0.05"))
    scheduler.advance(3600)
    assert seen[-1] is FeeStatus.COMPLETED
    ranks = [ORDER[s] for s in seen]
    assert ranks == sorted(ranks)
    assert FeeStatus.MIXING in seen and FeeStatus.DISPERSED in seen


def test_conservation_after_every_commit(engine, scheduler):
    violations = []

    def listener(status):
        if status.total_fees_collected != status.fees_in_mixing + status.fees_dispersed:
            violations.append(status)

    engine.subscribe(listener)
    for i in range(5):
        engine.route_fee(f"escrow-{i}", Decimal("0.03") * (i + 1))
        scheduler.advance(7)
    scheduler.advance(4000)
    assert violations == []
    status = engine.get_routing_status()
    assert status.total_fees_collected == Decimal("0.45")
    assert status.fees_dispersed == Decimal("0.45")
    assert status.fees_in_mixing == 0
    assert_conserved(engine)


def test_hop_failure_marks_failed_and_keeps_funds(engine, scheduler):
    tx_id = engine.route_fee("escrow-1", "0.05")
    inbound = engine.get_fee_transaction_status(tx_id).shell_wallet_id

    with patch.object(engine._pool, "hop", side_effect=HopFailure("hop source missing")):
        scheduler.advance(1800)

    tx = engine.get_fee_transaction_status(tx_id)
    assert tx.status is FeeStatus.FAILED
    assert tx.failure_reason == "hop source missing"
    assert tx.hops_completed == 0
    assert tx.shell_wallet_id == inbound
    wallets = {w.id: w for w in engine.list_wallets()}
    assert wallets[inbound].balance == Decimal("0.05")
    status = engine.get_routing_status()
    assert status.fees_in_mixing == Decimal("0.05")
    assert status.fees_dispersed == 0
    assert engine.in_flight == 0
    assert_conserved(engine)

    # failed is terminal: nothing else fires for it
    scheduler.advance(3600)
    assert _status(engine, tx_id) is FeeStatus.FAILED


def test_unexpected_error_in_step_marks_failed(engine, scheduler):
    tx_id = engine.route_fee("escrow-1", "0.05")
    other_id = engine.route_fee("escrow-2", "0.02")
    real_record_hop = engine._ledger.record_hop

    def record_hop(tx, wallet_id, now):
        if tx == tx_id:
            raise RuntimeError("ledger write failed")
        return real_record_hop(tx, wallet_id, now)

    with patch.object(engine._ledger, "record_hop", side_effect=record_hop):
        scheduler.advance(1800)
    scheduler.advance(200)

    tx = engine.get_fee_transaction_status(tx_id)
    assert tx.status is FeeStatus.FAILED
    assert tx.failure_reason.startswith("RuntimeError")
    # the transfer was undone: the failed fee points at the wallet holding it
    assert tx.hops_completed == 0
    wallets = {w.id: w for w in engine.list_wallets()}
    assert wallets[tx.shell_wallet_id].balance == Decimal("0.05")
    assert_conserved(engine)
    # the other transaction is unaffected
    assert _status(engine, other_id) is FeeStatus.COMPLETED
    status = engine.get_routing_status()
    assert status.total_fees_collected == status.fees_in_mixing + status.fees_dispersed
    assert engine.reconcile().ok


def test_stalled_transaction_does_not_block_others(engine, scheduler):
    engine.update_config(min_round_delay_sec=10**6, max_round_delay_sec=10**6)
    stalled = engine.route_fee("escrow-slow", "0.05")
    scheduler.advance(1800)
    assert engine.get_fee_transaction_status(stalled).hops_completed == 1

    engine.update_config(min_round_delay_sec=10, max_round_delay_sec=10)
    quick = engine.route_fee("escrow-quick", "0.02")
    scheduler.advance(2000)

    assert _status(engine, quick) is FeeStatus.COMPLETED
    tx = engine.get_fee_transaction_status(stalled)
    assert tx.status is FeeStatus.MIXING
    assert tx.hops_completed == 1
    assert engine.in_flight == 1
    assert_conserved(engine)


def test_config_change_keeps_drawn_rounds(engine, scheduler):
    tx_id = engine.route_fee("escrow-1", "0.05")
    engine.update_config(min_mixing_rounds=5, max_mixing_rounds=5)
    scheduler.advance(3600)
    tx = engine.get_fee_transaction_status(tx_id)
    assert tx.mixing_rounds == 3
    assert tx.hops_completed == 3
    assert tx.status is FeeStatus.COMPLETED
    newer = engine.get_fee_transaction_status(engine.route_fee("escrow-2", "0.05"))
    assert newer.mixing_rounds == 5


def test_escrow_scenario_large_fee(engine, scheduler):
    tx_id = engine.route_fee("escrow-123", 5000)
    statuses = [_status(engine, tx_id)]
    for step in (1800, 20, 60):
        scheduler.advance(step)
        statuses.append(_status(engine, tx_id))
    assert statuses == [FeeStatus.PENDING, FeeStatus.MIXING, FeeStatus.DISPERSED, FeeStatus.COMPLETED]
    status = engine.get_routing_status()
    assert status.fees_dispersed == Decimal("5000")
    assert status.total_fees_collected == Decimal("5000")
    assert_conserved(engine)


def test_fee_routed_before_start_is_armed_once(make_engine, fast_config):
    engine = make_engine(fast_config)
    scheduler = engine.scheduler
    tx_id = engine.route_fee("escrow-1", "0.05")
    engine.start()
    assert engine.in_flight == 1

    notifications = []
    engine.subscribe(notifications.append)
    scheduler.advance(1800)
    tx = engine.get_fee_transaction_status(tx_id)
    assert tx.status is FeeStatus.MIXING
    assert tx.hops_completed == 1
    assert engine.in_flight == 1
    assert len(notifications) == 1

    scheduler.advance(80)
    tx = engine.get_fee_transaction_status(tx_id)
    assert tx.status is FeeStatus.COMPLETED
    assert tx.hops_completed == 3
    assert engine.in_flight == 0
    assert_conserved(engine)


def test_failed_hop_leaves_no_extra_wallet(engine, scheduler):
    tx_id = engine.route_fee("escrow-1", "0.05")
    inbound = engine.get_fee_transaction_status(tx_id).shell_wallet_id
    # empty the inbound wallet behind the fee's back
    engine._pool.debit(inbound, Decimal("0.05"), T0)
    engine._status.record_dispersal(Decimal("0.05"))

    scheduler.advance(1800)
    tx = engine.get_fee_transaction_status(tx_id)
    assert tx.status is FeeStatus.FAILED
    assert "holds 0" in tx.failure_reason
    assert [w.id for w in engine.list_wallets()] == [inbound]
    assert engine.get_routing_status().active_shell_wallets == 0
