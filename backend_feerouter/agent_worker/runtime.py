"""
Persistent runtime for the fee routing engine (no HTTP).

Runs as a separate process (CLI entrypoint). Loads the latest snapshot, resumes
unresolved fee transactions, starts the retirement cycle timer, then logs a
heartbeat with the routing status and a conservation audit until shutdown.
Safe shutdown on KeyboardInterrupt/SIGTERM: timers cancelled, final snapshot
flushed.

Usage: python -m backend_feerouter.agent_worker.runtime
"""

from __future__ import annotations

import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from backend_feerouter.config import MixingConfig, get_settings
from backend_feerouter.database import get_store
from backend_feerouter.logging import get_logger
from backend_feerouter.routing import FeeRoutingEngine

logger = get_logger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_SEC = 30.0
MIN_HEARTBEAT_INTERVAL_SEC = 1.0


@dataclass
class RuntimeConfig:
    """
    Config for the persistent runtime.

    db_path: SQLite snapshot store.
    heartbeat_interval_sec: Seconds between heartbeat logs.
    mixing: Mixing parameters for the engine.
    """

    db_path: str | Path = field(default_factory=lambda: Path("feerouter.db"))
    heartbeat_interval_sec: float = DEFAULT_HEARTBEAT_INTERVAL_SEC
    mixing: MixingConfig = field(default_factory=MixingConfig)

    def __post_init__(self) -> None:
        self.heartbeat_interval_sec = max(MIN_HEARTBEAT_INTERVAL_SEC, float(self.heartbeat_interval_sec))


@dataclass
class RuntimeState:
    """Mutable state for heartbeat and monitoring."""

    heartbeats: int = 0
    last_heartbeat_at: float | None = None
    conservation_violations: int = 0


def heartbeat(engine: FeeRoutingEngine, state: RuntimeState) -> None:
    """Log one heartbeat: aggregate status, in-flight timers, conservation audit."""
    status = engine.get_routing_status()
    report = engine.reconcile()
    state.heartbeats += 1
    state.last_heartbeat_at = time.time()
    if not report.ok:
        state.conservation_violations += 1
    logger.info(
        "runtime_heartbeat",
        total_fees_collected=str(status.total_fees_collected),
        fees_in_mixing=str(status.fees_in_mixing),
        fees_dispersed=str(status.fees_dispersed),
        active_shell_wallets=status.active_shell_wallets,
        next_cycle_time=status.next_cycle_time,
        in_flight=engine.in_flight,
        conservation_ok=report.ok,
    )


def run_loop(config: RuntimeConfig, stop_event: threading.Event | None = None) -> RuntimeState:
    """
    Start the engine and block until stop_event is set (or SIGTERM/KeyboardInterrupt).
    Per-heartbeat exceptions are caught and logged; the loop never crashes.
    """
    stop_event = stop_event or threading.Event()

    def request_shutdown(*args: Any, **kwargs: Any) -> None:
        stop_event.set()

    try:
        signal.signal(signal.SIGTERM, request_shutdown)
    except (AttributeError, ValueError):
        # Windows, or not on the main thread
        pass

    engine = FeeRoutingEngine(config=config.mixing, store=get_store(config.db_path))
    state = RuntimeState()
    engine.start()
    logger.info(
        "runtime_worker_started",
        heartbeat_interval_sec=config.heartbeat_interval_sec,
        db_path=str(config.db_path),
    )
    try:
        while not stop_event.wait(config.heartbeat_interval_sec):
            try:
                heartbeat(engine, state)
            except Exception as e:
                logger.exception("runtime_heartbeat_failed", error=str(e))
    except KeyboardInterrupt:
        logger.info("runtime_shutdown_signal")
    finally:
        engine.stop()
        logger.info("runtime_worker_stopped", heartbeats=state.heartbeats)
    return state


def _load_config_from_env() -> RuntimeConfig:
    settings = get_settings()
    return RuntimeConfig(
        db_path=settings.db_path,
        heartbeat_interval_sec=settings.heartbeat_interval_sec,
        mixing=settings.mixing,
    )


def main() -> int:
    """CLI entrypoint: load config from env and run the engine until shutdown."""
    try:
        run_loop(_load_config_from_env())
        return 0
    except Exception as e:
        logger.exception("runtime_fatal", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
