# Delayed-task scheduling: single worker, cancellable timers, virtual clock for tests.

from backend_feerouter.scheduler.engine import (
    ManualScheduler,
    Scheduler,
    ThreadedScheduler,
    TimerHandle,
)

__all__ = [
    "ManualScheduler",
    "Scheduler",
    "ThreadedScheduler",
    "TimerHandle",
]
