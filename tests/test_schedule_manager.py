from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from autotester.config import StorageConfig
from autotester.errors import BusError, DeviceError, InvalidSchedule
from autotester.scheduling import EXIT_CANCELLED, EXIT_EXHAUSTED, EXIT_INVALID, ScheduleManager, WorkerState, parse_rule
from autotester.storage import Database, ResultStore

NOW = datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)


class _FakeDriver:
    def __init__(self, outcomes: Optional[List[object]] = None, on_call: Optional[Callable[[], None]] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.on_call = on_call
        self.calls: List[tuple] = []

    def execute_test(self, address, opcode, key=None, cancel=None):
        self.calls.append((address, opcode, key))
        if self.on_call is not None:
            self.on_call()
        outcome = self.outcomes.pop(0) if self.outcomes else 1.0
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class _ListEvaluator:
    """Yields a fixed number of immediately-due occurrences, then runs out."""

    def __init__(self, count: int, delay_s: float = 0.0) -> None:
        self.remaining = count
        self.delay_s = delay_s

    def next(self, after):
        if self.remaining <= 0:
            return None
        self.remaining -= 1
        return after + timedelta(seconds=self.delay_s)


def _results(tmp_path) -> ResultStore:
    database = Database(StorageConfig(database_path=tmp_path / 'sched.sqlite', ensure_directories=False))
    database.initialise()
    return ResultStore(database)


def _manager(driver, results, evaluator=None) -> ScheduleManager:
    if evaluator is None:
        factory = parse_rule
    else:
        def factory(rule, start):
            return evaluator
    return ScheduleManager(driver, results, evaluator_factory=factory, clock=lambda: NOW)


def test_each_occurrence_runs_one_handshake_and_stores_the_reading(tmp_path):
    driver = _FakeDriver([8.1, 8.2, 8.3])
    results = _results(tmp_path)
    state = WorkerState(key='alk', rule='fake')

    reason = _manager(driver, results, _ListEvaluator(3)).run_loop(
        'alk', 'fake', 0x10, 0x12, threading.Event(), state=state
    )

    assert reason == EXIT_EXHAUSTED
    assert driver.calls == [(0x10, 0x12, 'alk')] * 3
    assert [value for _, value in results.list_by_parameter('alk')] == [8.1, 8.2, 8.3]
    assert state.runs == 3
    assert state.last_value == 8.3


def test_exhausted_rule_logs_a_warning_and_exits(tmp_path, caplog):
    driver = _FakeDriver()
    caplog.set_level(logging.WARNING, logger='autotester')

    reason = _manager(driver, _results(tmp_path), _ListEvaluator(0)).run_loop(
        'ca', 'fake', 0x10, 0x11, threading.Event()
    )

    assert reason == EXIT_EXHAUSTED
    assert driver.calls == []
    assert any('no further occurrences' in record.getMessage() for record in caplog.records)


def test_failed_handshake_is_logged_and_the_loop_continues(tmp_path, caplog):
    driver = _FakeDriver([DeviceError('fault', 2), BusError('nack', 0x10), 420.0])
    results = _results(tmp_path)
    state = WorkerState(key='ca', rule='fake')
    caplog.set_level(logging.WARNING, logger='autotester')

    _manager(driver, results, _ListEvaluator(3)).run_loop('ca', 'fake', 0x10, 0x11, threading.Event(), state=state)

    assert len(driver.calls) == 3
    assert results.list_by_parameter('ca') == [(NOW, 420.0)]
    assert state.failures == 2
    assert state.last_error is None
    assert sum('scheduled test failed' in record.getMessage() for record in caplog.records) == 2


def test_cancel_before_first_occurrence_runs_nothing(tmp_path):
    driver = _FakeDriver()
    cancel = threading.Event()
    manager = _manager(driver, _results(tmp_path), _ListEvaluator(5, delay_s=3600))
    outcome: List[str] = []

    thread = threading.Thread(target=lambda: outcome.append(manager.run_loop('mg', 'fake', 0x10, 0x13, cancel)))
    thread.start()
    time.sleep(0.05)
    cancel.set()
    thread.join(timeout=2)

    assert not thread.is_alive()
    assert outcome == [EXIT_CANCELLED]
    assert driver.calls == []


def test_cancel_during_a_cycle_stops_after_it(tmp_path):
    cancel = threading.Event()
    driver = _FakeDriver(on_call=cancel.set)

    reason = _manager(driver, _results(tmp_path), _ListEvaluator(10)).run_loop('no3', 'fake', 0x10, 0x14, cancel)

    assert reason == EXIT_CANCELLED
    assert len(driver.calls) == 1


def test_invalid_rule_logs_one_error_and_never_runs(tmp_path, caplog):
    driver = _FakeDriver()
    caplog.set_level(logging.DEBUG, logger='autotester')

    reason = _manager(driver, _results(tmp_path)).run_loop('po4', '', 0x10, 0x15, threading.Event())

    assert reason == EXIT_INVALID
    assert driver.calls == []
    errors = [record for record in caplog.records if record.levelno == logging.ERROR]
    assert len(errors) == 1
    assert 'po4' in errors[0].getMessage()


def test_build_evaluator_returns_none_for_bad_rules(tmp_path):
    manager = _manager(_FakeDriver(), _results(tmp_path))

    assert manager.build_evaluator('ca', 'not a rule') is None
    assert manager.build_evaluator('ca', '0 * * * *') is not None


def test_invalid_schedule_from_custom_factory_is_reported(tmp_path):
    def _factory(rule, start):
        raise InvalidSchedule(rule, 'unsupported')

    manager = ScheduleManager(_FakeDriver(), _results(tmp_path), evaluator_factory=_factory, clock=lambda: NOW)

    assert manager.run_loop('ca', 'x', 0x10, 0x11, threading.Event()) == EXIT_INVALID


@pytest.mark.parametrize('count', [1, 2])
def test_worker_state_reports_exit_reason(tmp_path, count):
    state = WorkerState(key='alk', rule='fake')

    _manager(_FakeDriver(), _results(tmp_path), _ListEvaluator(count)).run_loop(
        'alk', 'fake', 0x10, 0x12, threading.Event(), state=state
    )

    payload = state.to_dict()
    assert payload['exit_reason'] == EXIT_EXHAUSTED
    assert payload['runs'] == count
    assert payload['next_run'] is None
