"""Per-parameter recurring test loop."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Optional

from ..errors import AutotesterError, HandshakeCancelled, InvalidSchedule, StoreError
from ..protocol import ProtocolDriver
from ..storage import Reading, ResultStore
from .recurrence import EvaluatorFactory, RecurrenceEvaluator, parse_rule

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

EXIT_CANCELLED = 'cancelled'
EXIT_EXHAUSTED = 'exhausted'
EXIT_INVALID = 'invalid'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def zoned_clock(zone: tzinfo) -> Clock:
    """Clock reporting the current instant in *zone*."""

    def _now() -> datetime:
        return datetime.now(zone)

    return _now


@dataclass(slots=True)
class WorkerState:
    '''Runtime state of one scheduled loop, exposed through the status API.'''

    key: str
    rule: str
    next_run: Optional[datetime] = None
    runs: int = 0
    failures: int = 0
    last_run_at: Optional[datetime] = None
    last_value: Optional[float] = None
    last_error: Optional[str] = None
    exit_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'rule': self.rule,
            'next_run': self.next_run.isoformat() if self.next_run else None,
            'runs': self.runs,
            'failures': self.failures,
            'last_run_at': self.last_run_at.isoformat() if self.last_run_at else None,
            'last_value': self.last_value,
            'last_error': self.last_error,
            'exit_reason': self.exit_reason,
        }


class ScheduleManager:
    """Evaluates a parameter's rule, waits, and runs the handshake when due."""

    def __init__(
        self,
        driver: ProtocolDriver,
        results: ResultStore,
        evaluator_factory: EvaluatorFactory = parse_rule,
        clock: Clock = utcnow,
    ) -> None:
        self._driver = driver
        self._results = results
        self._evaluator_factory = evaluator_factory
        self._clock = clock

    def build_evaluator(self, key: str, rule: str) -> Optional[RecurrenceEvaluator]:
        """Parse *rule*; on failure log once and return None."""

        try:
            return self._evaluator_factory(rule, self._clock())
        except InvalidSchedule as exc:
            logger.error("[%s] not scheduling: %s", key, exc)
            return None

    def run_loop(
        self,
        key: str,
        rule: str,
        address: int,
        opcode: int,
        cancel: threading.Event,
        *,
        evaluator: Optional[RecurrenceEvaluator] = None,
        state: Optional[WorkerState] = None,
    ) -> str:
        """Run until *cancel* fires or the rule runs out; return the exit reason."""

        state = state or WorkerState(key=key, rule=rule)
        if evaluator is None:
            evaluator = self.build_evaluator(key, rule)
            if evaluator is None:
                state.exit_reason = EXIT_INVALID
                return EXIT_INVALID

        logger.info("[%s] schedule started: %r", key, rule)
        while not cancel.is_set():
            now = self._clock()
            due = evaluator.next(now)
            state.next_run = due
            if due is None:
                logger.warning("[%s] schedule %r has no further occurrences; stopping", key, rule)
                state.exit_reason = EXIT_EXHAUSTED
                return EXIT_EXHAUSTED
            delay = max((due - now).total_seconds(), 0.0)
            logger.debug("[%s] next run at %s (in %.1fs)", key, due.isoformat(), delay)
            if cancel.wait(delay):
                break
            self._run_cycle(key, address, opcode, cancel, state)

        state.next_run = None
        state.exit_reason = EXIT_CANCELLED
        logger.info("[%s] schedule stopped", key)
        return EXIT_CANCELLED

    def _run_cycle(
        self,
        key: str,
        address: int,
        opcode: int,
        cancel: threading.Event,
        state: WorkerState,
    ) -> None:
        state.runs += 1
        state.last_run_at = self._clock()
        try:
            value = self._driver.execute_test(address, opcode, key=key, cancel=cancel)
        except HandshakeCancelled:
            return
        except AutotesterError as exc:
            state.failures += 1
            state.last_error = f"{type(exc).__name__}: {exc}"
            logger.warning("[%s] scheduled test failed, waiting for next occurrence", key)
            return
        state.last_value = value
        try:
            record_id = self._results.append(Reading(parameter=key, value=value, timestamp=self._clock()))
        except StoreError as exc:
            state.failures += 1
            state.last_error = f"StoreError: {exc}"
            logger.error("[%s] could not store reading %s: %s", key, value, exc)
            return
        state.last_error = None
        logger.info("[%s] stored reading %s = %s", key, record_id, value)
