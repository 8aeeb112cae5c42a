"""Orchestration layer — locks, clock, deadline scheduling, and workers."""

from escrow_engine.orchestration.clock import Clock, ManualClock, SystemClock
from escrow_engine.orchestration.deadline_scheduler import DeadlineScheduler, ScheduledDeadline
from escrow_engine.orchestration.locks import KeyedLock
from escrow_engine.orchestration.worker_pool import TransitionWorkerPool

__all__ = [
    "Clock",
    "DeadlineScheduler",
    "KeyedLock",
    "ManualClock",
    "ScheduledDeadline",
    "SystemClock",
    "TransitionWorkerPool",
]
