"""Recurring schedule evaluation."""
from __future__ import annotations

from .manager import EXIT_CANCELLED, EXIT_EXHAUSTED, EXIT_INVALID, ScheduleManager, WorkerState, zoned_clock
from .recurrence import CronEvaluator, RecurrenceEvaluator, parse_rule

__all__ = [
    "CronEvaluator",
    "EXIT_CANCELLED",
    "EXIT_EXHAUSTED",
    "EXIT_INVALID",
    "RecurrenceEvaluator",
    "ScheduleManager",
    "WorkerState",
    "parse_rule",
    "zoned_clock",
]
