"""Supervisor owning one scheduled worker per enabled parameter."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..constants import PARAMETERS
from ..protocol import KIND_TEST, resolve_opcode
from ..scheduling import RecurrenceEvaluator, ScheduleManager, WorkerState
from ..storage import AutotesterConfig, ConfigStore, ParameterSchedule

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SupervisorOptions:
    """Configuration options for the supervisor."""

    join_timeout_s: float = 2.0


@dataclass(slots=True)
class WorkerHandle:
    """A running scheduled loop and the token that stops it."""

    key: str
    address: int
    schedule: ParameterSchedule
    state: WorkerState
    cancel: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def to_dict(self) -> Dict[str, object]:
        payload = self.state.to_dict()
        payload['alive'] = self.alive
        payload['address'] = self.address
        return payload


def _desired_worker(config: Optional[AutotesterConfig], key: str) -> Optional[Tuple[int, ParameterSchedule]]:
    if config is None or key not in config.enabled_parameters():
        return None
    return config.address, config.parameters[key]


class Supervisor:
    """Starts, stops and reconciles the per-parameter scheduled workers."""

    def __init__(
        self,
        config_store: ConfigStore,
        manager: ScheduleManager,
        options: Optional[SupervisorOptions] = None,
    ) -> None:
        self._config_store = config_store
        self._manager = manager
        self._options = options or SupervisorOptions()
        self._lock = threading.RLock()
        self._reconcile_lock = threading.Lock()
        self._workers: Dict[str, WorkerHandle] = {}
        self._config: Optional[AutotesterConfig] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Load the configuration and launch a worker per enabled parameter."""

        with self._lock:
            if self._running:
                return
            config = self._config_store.get()
            self._config = config
            self._running = True
            if not config.enable:
                logger.info("auto-tester disabled; no workers started")
                return
            for key in config.enabled_parameters():
                self._start_worker(key, config)
            logger.info("supervisor started %d worker(s): %s", len(self._workers), sorted(self._workers))

    def stop(self) -> None:
        """Cancel every worker and wait for them to exit."""

        with self._lock:
            handles = list(self._workers.values())
            self._workers.clear()
            self._running = False
        for handle in handles:
            handle.cancel.set()
        for handle in handles:
            self._join(handle)
        if handles:
            logger.info("supervisor stopped %d worker(s)", len(handles))

    def reconcile(self, config: AutotesterConfig) -> Dict[str, List[str]]:
        """Restart only the workers whose address, enablement or rule changed."""

        changes: Dict[str, List[str]] = {'stopped': [], 'started': []}
        with self._reconcile_lock:
            self._reconcile(config, changes)
        if changes['stopped'] or changes['started']:
            logger.info("reconciled workers: stopped=%s started=%s", changes['stopped'], changes['started'])
        return changes

    def _reconcile(self, config: AutotesterConfig, changes: Dict[str, List[str]]) -> None:
        with self._lock:
            previous = self._config
            self._config = config
            if not self._running:
                return
            stopping: List[WorkerHandle] = []
            starting: List[str] = []
            for key in PARAMETERS:
                if _desired_worker(previous, key) == _desired_worker(config, key):
                    continue
                handle = self._workers.pop(key, None)
                if handle is not None:
                    handle.cancel.set()
                    stopping.append(handle)
                    changes['stopped'].append(key)
                if _desired_worker(config, key) is not None:
                    starting.append(key)
        for handle in stopping:
            self._join(handle)
        with self._lock:
            if self._running:
                for key in starting:
                    if self._start_worker(key, config):
                        changes['started'].append(key)

    def workers(self) -> List[WorkerHandle]:
        with self._lock:
            return [self._workers[key] for key in PARAMETERS if key in self._workers]

    def _start_worker(self, key: str, config: AutotesterConfig) -> bool:
        schedule = config.parameters[key]
        evaluator = self._manager.build_evaluator(key, schedule.schedule)
        if evaluator is None:
            return False
        handle = WorkerHandle(
            key=key,
            address=config.address,
            schedule=schedule,
            state=WorkerState(key=key, rule=schedule.schedule),
        )
        thread = threading.Thread(
            target=self._run_worker,
            name=f'autotester-{key}',
            args=(handle, evaluator),
            daemon=True,
        )
        handle.thread = thread
        self._workers[key] = handle
        thread.start()
        return True

    def _run_worker(self, handle: WorkerHandle, evaluator: RecurrenceEvaluator) -> None:
        try:
            self._manager.run_loop(
                handle.key,
                handle.schedule.schedule,
                handle.address,
                resolve_opcode(KIND_TEST, handle.key),
                handle.cancel,
                evaluator=evaluator,
                state=handle.state,
            )
        except Exception:  # pylint: disable=broad-except
            handle.state.exit_reason = 'crashed'
            logger.exception("[%s] worker crashed", handle.key)
        finally:
            with self._lock:
                if self._workers.get(handle.key) is handle:
                    del self._workers[handle.key]

    def _join(self, handle: WorkerHandle) -> None:
        thread = handle.thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=self._options.join_timeout_s)
        if thread.is_alive():
            logger.warning("[%s] worker did not exit within %.1fs", handle.key, self._options.join_timeout_s)
