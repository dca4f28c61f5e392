"""
Delayed-task scheduler: one worker, many timers.

Every timer callback of an engine runs through one Scheduler, one callback at a
time, so hops for different transactions never interleave. Two implementations:

- ThreadedScheduler: a single daemon worker thread owns a heap of due tasks
  (real clock, Unix seconds). Used by the API server and the runtime worker.
- ManualScheduler: virtual clock driven by advance(); callbacks run on the
  caller's thread in due order. Used by tests for deterministic timing.

After shutdown() pending timers are dropped and call_later() returns an
already-cancelled handle, so nothing can be scheduled once an engine stops.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable

from backend_feerouter.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[[], None]


class TimerHandle:
    """Handle for one scheduled callback; cancel() is idempotent."""

    __slots__ = ("when", "name", "_callback", "_cancelled")

    def __init__(self, when: float, callback: Callback, name: str = "") -> None:
        self.when = when
        self.name = name
        self._callback = callback
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def _run(self) -> None:
        if self._cancelled:
            return
        # A handle fires at most once
        self._cancelled = True
        try:
            self._callback()
        except Exception as e:
            logger.exception("scheduler_task_failed", task=self.name, error=str(e))

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "armed"
        return f"<TimerHandle {self.name or '?'} when={self.when:.3f} {state}>"


class Scheduler(ABC):
    """Abstract delayed-task scheduler."""

    @abstractmethod
    def now(self) -> float:
        """Current time in Unix seconds as seen by this scheduler."""
        ...

    @abstractmethod
    def call_later(self, delay: float, callback: Callback, *, name: str = "") -> TimerHandle:
        """Run callback after delay seconds (clamped at 0)."""
        ...

    @abstractmethod
    def shutdown(self) -> None:
        """Drop all pending timers and refuse new ones."""
        ...

    @property
    @abstractmethod
    def is_shutdown(self) -> bool:
        ...


class _HeapMixin:
    """Shared heap bookkeeping; caller must hold self._cond."""

    def _init_heap(self) -> None:
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._shutdown = False

    def _push(self, when: float, callback: Callback, name: str) -> TimerHandle:
        handle = TimerHandle(when, callback, name)
        if self._shutdown:
            handle.cancel()
            logger.debug("scheduler_rejected_after_shutdown", task=name)
            return handle
        heapq.heappush(self._heap, (when, next(self._seq), handle))
        return handle

    def _pop_due(self, until: float) -> TimerHandle | None:
        while self._heap:
            when, _, handle = self._heap[0]
            if handle.cancelled:
                heapq.heappop(self._heap)
                continue
            if when > until:
                return None
            heapq.heappop(self._heap)
            return handle
        return None

    def _next_due(self) -> float | None:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    @property
    def pending_count(self) -> int:
        with self._cond:
            return sum(1 for _, _, h in self._heap if not h.cancelled)


# -----------------------------------------------------------------------------
# Virtual clock
# -----------------------------------------------------------------------------


class ManualScheduler(_HeapMixin, Scheduler):
    """
    Deterministic scheduler for tests and simulations.

    Time only moves when advance() is called; due callbacks run in (when, FIFO)
    order with the clock set to each callback's due time.
    """

    def __init__(self, start_time: float = 0.0) -> None:
        self._now = float(start_time)
        self._cond = threading.RLock()
        self._init_heap()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback, *, name: str = "") -> TimerHandle:
        with self._cond:
            return self._push(self._now + max(0.0, float(delay)), callback, name)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running every callback that falls due. Returns count run."""
        if seconds < 0:
            raise ValueError("cannot move the clock backwards")
        target = self._now + seconds
        ran = 0
        while True:
            with self._cond:
                handle = self._pop_due(target)
                if handle is None:
                    break
                self._now = max(self._now, handle.when)
            handle._run()
            ran += 1
        with self._cond:
            self._now = max(self._now, target)
        return ran

    def run_pending(self) -> int:
        """Run callbacks already due at the current time."""
        return self.advance(0.0)

    def next_due(self) -> float | None:
        with self._cond:
            return self._next_due()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            for _, _, handle in self._heap:
                handle.cancel()
            self._heap.clear()

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown


# -----------------------------------------------------------------------------
# Real clock, single worker thread
# -----------------------------------------------------------------------------


class ThreadedScheduler(_HeapMixin, Scheduler):
    """
    Real-time scheduler backed by one daemon worker thread.

    The worker sleeps on a condition until the earliest timer is due or a new
    timer is added, then runs callbacks one at a time outside the condition lock.
    """

    def __init__(self, *, name: str = "feerouter-scheduler", clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._init_heap()
        self._thread = threading.Thread(target=self._run_loop, name=name, daemon=True)
        self._thread.start()
        logger.debug("scheduler_started", thread=name)

    def now(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callback, *, name: str = "") -> TimerHandle:
        with self._cond:
            handle = self._push(self._clock() + max(0.0, float(delay)), callback, name)
            self._cond.notify()
            return handle

    def _run_loop(self) -> None:
        while True:
            with self._cond:
                while True:
                    if self._shutdown:
                        return
                    now = self._clock()
                    handle = self._pop_due(now)
                    if handle is not None:
                        break
                    due = self._next_due()
                    self._cond.wait(timeout=None if due is None else max(0.0, due - now))
            handle._run()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        with self._cond:
            self._shutdown = True
            for _, _, handle in self._heap:
                handle.cancel()
            self._heap.clear()
            self._cond.notify_all()
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("scheduler_shutdown_timeout", timeout_sec=timeout)
        logger.debug("scheduler_stopped")

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown
