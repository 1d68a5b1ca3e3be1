from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone

from autotester.config import StorageConfig
from autotester.scheduling import ScheduleManager, parse_rule
from autotester.service import Supervisor, SupervisorOptions
from autotester.storage import AutotesterConfig, ConfigStore, Database, ResultStore

NOW = datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)


class _IdleDriver:
    def __init__(self) -> None:
        self.calls = 0

    def execute_test(self, address, opcode, key=None, cancel=None):
        self.calls += 1
        return 1.0


class _FarFutureEvaluator:
    def next(self, after):
        return after + timedelta(hours=1)


class _ExhaustedEvaluator:
    def next(self, after):
        return None


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _build(tmp_path, config: AutotesterConfig, evaluator_factory=None):
    database = Database(StorageConfig(database_path=tmp_path / 'sup.sqlite', ensure_directories=False))
    database.initialise()
    store = ConfigStore(database)
    store.save(config)
    manager = ScheduleManager(
        _IdleDriver(),
        ResultStore(database),
        evaluator_factory=evaluator_factory or (lambda rule, start: _FarFutureEvaluator()),
        clock=lambda: NOW,
    )
    return Supervisor(store, manager, SupervisorOptions(join_timeout_s=2.0))


def _config(**parameters) -> AutotesterConfig:
    return AutotesterConfig(
        parameters={key: {'enable': True, 'schedule': rule} for key, rule in parameters.items()},
    )


def test_start_launches_one_worker_per_enabled_parameter(tmp_path):
    supervisor = _build(tmp_path, _config(ca='0 * * * *', alk='30 * * * *'))

    supervisor.start()
    try:
        workers = supervisor.workers()
        assert [handle.key for handle in workers] == ['ca', 'alk']
        assert all(handle.alive for handle in workers)
        assert {handle.thread.name for handle in workers} == {'autotester-ca', 'autotester-alk'}
    finally:
        supervisor.stop()

    assert supervisor.workers() == []
    assert not supervisor.running


def test_stop_joins_every_worker(tmp_path):
    supervisor = _build(tmp_path, _config(ca='0 * * * *', mg='0 * * * *', po4='0 * * * *'))
    supervisor.start()
    handles = supervisor.workers()

    supervisor.stop()

    assert all(handle.cancel.is_set() for handle in handles)
    assert not any(handle.alive for handle in handles)


def test_disabled_module_starts_no_workers(tmp_path):
    config = _config(ca='0 * * * *')
    config.enable = False
    supervisor = _build(tmp_path, config)

    supervisor.start()
    try:
        assert supervisor.running
        assert supervisor.workers() == []
    finally:
        supervisor.stop()


def test_invalid_rule_does_not_block_other_workers(tmp_path):
    supervisor = _build(tmp_path, _config(ca='not a cron rule', alk='0 * * * *'), evaluator_factory=parse_rule)

    supervisor.start()
    try:
        assert [handle.key for handle in supervisor.workers()] == ['alk']
    finally:
        supervisor.stop()


def test_reconcile_restarts_only_changed_workers(tmp_path):
    supervisor = _build(tmp_path, _config(ca='0 * * * *', alk='0 * * * *'))
    supervisor.start()
    try:
        before = {handle.key: handle for handle in supervisor.workers()}

        changes = supervisor.reconcile(_config(ca='0 * * * *', alk='15 * * * *', no3='0 0 * * *'))

        after = {handle.key: handle for handle in supervisor.workers()}
        assert changes == {'stopped': ['alk'], 'started': ['alk', 'no3']}
        assert after['ca'] is before['ca']
        assert after['alk'] is not before['alk']
        assert before['alk'].cancel.is_set() and not before['alk'].alive
        assert after['alk'].schedule.schedule == '15 * * * *'
        assert set(after) == {'ca', 'alk', 'no3'}
    finally:
        supervisor.stop()


def test_reconcile_address_change_restarts_everything(tmp_path):
    supervisor = _build(tmp_path, _config(ca='0 * * * *', alk='0 * * * *'))
    supervisor.start()
    try:
        moved = _config(ca='0 * * * *', alk='0 * * * *')
        moved.address = 0x11

        changes = supervisor.reconcile(moved)

        assert sorted(changes['stopped']) == ['alk', 'ca']
        assert all(handle.address == 0x11 for handle in supervisor.workers())
    finally:
        supervisor.stop()


def test_reconcile_disable_stops_workers(tmp_path):
    supervisor = _build(tmp_path, _config(ca='0 * * * *'))
    supervisor.start()
    try:
        disabled = _config(ca='0 * * * *')
        disabled.enable = False

        changes = supervisor.reconcile(disabled)

        assert changes == {'stopped': ['ca'], 'started': []}
        assert supervisor.workers() == []
    finally:
        supervisor.stop()


def test_exhausted_worker_removes_itself(tmp_path):
    supervisor = _build(tmp_path, _config(mg='0 * * * *'), evaluator_factory=lambda rule, start: _ExhaustedEvaluator())

    supervisor.start()
    try:
        assert _wait_for(lambda: supervisor.workers() == [])
    finally:
        supervisor.stop()


def test_reconcile_before_start_only_records_config(tmp_path):
    supervisor = _build(tmp_path, _config())

    assert supervisor.reconcile(_config(ca='0 * * * *')) == {'stopped': [], 'started': []}
    assert supervisor.workers() == []


def test_overlapping_reconciles_keep_every_enabled_worker(tmp_path):
    supervisor = _build(tmp_path, _config(mg='0 * * * *'))
    slow_join = supervisor._join

    def _join(handle):
        time.sleep(0.3)
        slow_join(handle)

    supervisor._join = _join
    supervisor.start()
    try:
        first = _config(ca='0 * * * *', mg='15 * * * *')
        second = _config(ca='0 * * * *', mg='15 * * * *', po4='0 0 * * *')
        background = threading.Thread(target=supervisor.reconcile, args=(first,))
        background.start()
        time.sleep(0.05)
        supervisor.reconcile(second)
        background.join(timeout=5)

        workers = {handle.key: handle for handle in supervisor.workers()}
        assert set(workers) == {'ca', 'mg', 'po4'}
        assert all(handle.alive for handle in workers.values())
        assert workers['mg'].schedule.schedule == '15 * * * *'
    finally:
        supervisor.stop()
