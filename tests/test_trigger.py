from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

import pytest

from autotester.config import StorageConfig
from autotester.errors import DeviceError, UnknownKey
from autotester.service import OnDemandTrigger
from autotester.storage import AutotesterConfig, ConfigStore, Database, ResultStore

NOW = datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)


class _RecordingDriver:
    def __init__(self, value=8.4, error=None, gate: threading.Event | None = None) -> None:
        self.value = value
        self.error = error
        self.gate = gate
        self.calls = []

    def execute_test(self, address, opcode, key=None, cancel=None):
        self.calls.append((address, opcode, key))
        if self.gate is not None:
            while not self.gate.wait(0.01):
                if cancel is not None and cancel.is_set():
                    raise DeviceError('cancelled by test')
        if self.error is not None:
            raise self.error
        return self.value


def _build(tmp_path, driver, address=0x10):
    database = Database(StorageConfig(database_path=tmp_path / 'trigger.sqlite', ensure_directories=False))
    database.initialise()
    store = ConfigStore(database)
    store.save(AutotesterConfig(address=address))
    results = ResultStore(database)
    return OnDemandTrigger(driver, results, store, clock=lambda: NOW), results


def test_trigger_runs_test_and_stores_reading(tmp_path):
    driver = _RecordingDriver(value=8.4)
    trigger, results = _build(tmp_path, driver, address=0x21)

    trigger.trigger('ALK')

    assert trigger.join(timeout=2)
    assert driver.calls == [(0x21, 0x12, 'alk')]
    assert results.list_by_parameter('alk') == [(NOW, 8.4)]


def test_calibration_is_not_stored_as_a_reading(tmp_path, caplog):
    driver = _RecordingDriver(value=1.0)
    trigger, results = _build(tmp_path, driver)
    caplog.set_level(logging.INFO, logger='autotester')

    trigger.calibrate('pump')

    assert trigger.join(timeout=2)
    assert driver.calls == [(0x10, 0x21, 'calibrate:pump')]
    for key in ('ca', 'alk', 'mg', 'no3', 'po4'):
        assert results.list_by_parameter(key) == []
    assert any('calibration finished' in record.getMessage() for record in caplog.records)


@pytest.mark.parametrize(('method', 'key'), [('trigger', 'ph'), ('trigger', 'pump'), ('calibrate', 'kh')])
def test_unknown_keys_raise_before_anything_runs(tmp_path, method, key):
    driver = _RecordingDriver()
    trigger, _ = _build(tmp_path, driver)

    with pytest.raises(UnknownKey):
        getattr(trigger, method)(key)

    assert trigger.join(timeout=1)
    assert driver.calls == []


def test_failed_trigger_is_logged_not_raised(tmp_path, caplog):
    driver = _RecordingDriver(error=DeviceError('fault', 2))
    trigger, results = _build(tmp_path, driver)
    caplog.set_level(logging.WARNING, logger='autotester')

    trigger.trigger('ca')

    assert trigger.join(timeout=2)
    assert results.list_by_parameter('ca') == []
    assert any('on-demand test failed' in record.getMessage() for record in caplog.records)


def test_trigger_returns_before_the_handshake_completes(tmp_path):
    gate = threading.Event()
    driver = _RecordingDriver(gate=gate)
    trigger, results = _build(tmp_path, driver)

    trigger.trigger('mg')

    assert not trigger.join(timeout=0.05)
    gate.set()
    assert trigger.join(timeout=2)
    assert len(results.list_by_parameter('mg')) == 1


def test_stop_cancels_in_flight_triggers(tmp_path):
    driver = _RecordingDriver(gate=threading.Event())
    trigger, results = _build(tmp_path, driver)
    trigger.trigger('no3')

    trigger.stop(timeout=2)

    assert trigger.join(timeout=0)
    assert results.list_by_parameter('no3') == []


def test_triggers_after_stop_run_normally(tmp_path):
    driver = _RecordingDriver(value=5.0)
    trigger, results = _build(tmp_path, driver)
    trigger.stop(timeout=1)

    seen = []
    original = driver.execute_test

    def _record_cancel(address, opcode, key=None, cancel=None):
        seen.append(cancel.is_set())
        return original(address, opcode, key=key, cancel=cancel)

    driver.execute_test = _record_cancel
    trigger.trigger('no3')

    assert trigger.join(timeout=2)
    assert seen == [False]
    assert results.list_by_parameter('no3') == [(NOW, 5.0)]
