"""
Pytest fixtures for FeeRouter tests.

Engines run on a ManualScheduler (virtual clock) over a MemoryStore with a
seeded RNG, so every delay and id is deterministic. The fast_config pins
rounds and delays so timelines can be asserted exactly.
"""

from __future__ import annotations

import random

import pytest

from backend_feerouter.config import MixingConfig
from backend_feerouter.database import MemoryStore
from backend_feerouter.routing import FeeRoutingEngine
from backend_feerouter.scheduler import ManualScheduler

# Mid-cycle Unix time (6h cycles): floor(T0 / 21600) == 78703
T0 = 1_700_000_000.0
CYCLE_SEC = 6 * 3600.0
DAY_SEC = 86400.0


@pytest.fixture
def fast_config() -> MixingConfig:
    """3 hops, 30 min start delay, 10 s between hops, 60 s before completion."""
    return MixingConfig(
        min_mixing_rounds=3,
        max_mixing_rounds=3,
        min_delay_minutes=30,
        max_delay_minutes=30,
        min_round_delay_sec=10,
        max_round_delay_sec=10,
        min_final_delay_sec=60,
        max_final_delay_sec=60,
    )


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler(start_time=T0)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def make_engine(store):
    """Factory: build an engine (not started) on its own virtual clock; stopped at teardown."""
    engines: list[FeeRoutingEngine] = []

    def _make(
        config: MixingConfig | None = None,
        *,
        scheduler: ManualScheduler | None = None,
        kv_store=None,
        seed: int = 7,
    ) -> FeeRoutingEngine:
        engine = FeeRoutingEngine(
            config=config or MixingConfig(),
            store=kv_store if kv_store is not None else store,
            scheduler=scheduler or ManualScheduler(start_time=T0),
            rng=random.Random(seed),
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.stop()


@pytest.fixture
def engine(make_engine, fast_config, scheduler) -> FeeRoutingEngine:
    """Started engine with fast_config on the shared `scheduler` fixture."""
    eng = make_engine(fast_config, scheduler=scheduler)
    eng.start()
    return eng


def assert_conserved(engine: FeeRoutingEngine) -> None:
    status = engine.get_routing_status()
    assert status.is_conserved
    assert all(w.balance >= 0 for w in engine.list_wallets())
    report = engine.reconcile()
    assert report.ok, report.to_dict()
