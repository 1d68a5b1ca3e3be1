"""Controller facade: the operations the HTTP boundary and CLI call."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..config import AppConfig
from ..errors import AutotesterError, ConfigError, InvalidSchedule
from ..hardware import SharedBus, create_bus
from ..protocol import ProtocolDriver, normalise_parameter
from ..scheduling import ScheduleManager, parse_rule
from ..scheduling.manager import Clock, zoned_clock
from ..scheduling.recurrence import EvaluatorFactory
from ..storage import AutotesterConfig, ConfigStore, Database, ResultStore
from .supervisor import Supervisor, SupervisorOptions
from .trigger import OnDemandTrigger

logger = logging.getLogger(__name__)


class AutotesterController:
    """Wires bus, driver, stores, supervisor and triggers together."""

    def __init__(
        self,
        config: AppConfig,
        database: Database,
        bus: Optional[SharedBus] = None,
        *,
        evaluator_factory: EvaluatorFactory = parse_rule,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._clock = clock or zoned_clock(config.scheduler.zone())
        self._database = database
        self._bus = bus or create_bus(config.bus)
        self.config_store = ConfigStore(database)
        self.results = ResultStore(database)
        self.driver = ProtocolDriver(self._bus, poll_interval_s=config.driver.poll_interval_s)
        self.manager = ScheduleManager(self.driver, self.results, evaluator_factory=evaluator_factory, clock=self._clock)
        self.supervisor = Supervisor(
            self.config_store,
            self.manager,
            SupervisorOptions(join_timeout_s=config.service.join_timeout_s),
        )
        self.triggers = OnDemandTrigger(self.driver, self.results, self.config_store, clock=self._clock)

    @property
    def database(self) -> Database:
        return self._database

    @property
    def bus(self) -> SharedBus:
        return self._bus

    def start(self) -> None:
        self._database.initialise()
        self.supervisor.start()

    def stop(self) -> None:
        self.supervisor.stop()
        self.triggers.stop(self._config.service.join_timeout_s)
        self._bus.close()

    def get_config(self) -> AutotesterConfig:
        return self.config_store.get()

    def update_config(self, payload: Dict[str, Any]) -> Dict[str, List[str]]:
        """Validate and save *payload*, then reconcile running workers."""

        config = AutotesterConfig.from_dict(payload)
        for key in config.enabled_parameters():
            try:
                parse_rule(config.parameters[key].schedule, self._clock())
            except InvalidSchedule as exc:
                raise ConfigError(f"{key}: {exc}") from exc
        self.config_store.save(config)
        return self.supervisor.reconcile(config)

    def run_test(self, key: str) -> None:
        self.triggers.trigger(key)

    def calibrate(self, key: str) -> None:
        self.triggers.calibrate(key)

    def device_status(self) -> Dict[str, Any]:
        address = self.config_store.get().address
        payload: Dict[str, Any] = {
            'address': address,
            'timezone': self._config.scheduler.timezone,
            'status': None,
            'state': 'unknown',
            'error': None,
            'workers': [handle.to_dict() for handle in self.supervisor.workers()],
        }
        try:
            status = self.driver.query_status(address)
        except AutotesterError as exc:
            payload['error'] = f"{type(exc).__name__}: {exc}"
        else:
            payload['status'] = status
            payload['state'] = {0: 'idle', 2: 'error'}.get(status, 'busy')
        payload['bus'] = self._bus.stats.to_dict()
        return payload

    def list_results(self, key: str) -> List[Dict[str, float]]:
        """Readings for *key* shaped for charting: unix seconds and value."""

        parameter = normalise_parameter(key)
        return [
            {'ts': int(timestamp.timestamp()), 'value': value}
            for timestamp, value in self.results.list_by_parameter(parameter)
        ]

    def recent_events(self, *, limit: int = 20, since_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._database.recent_audit_events(limit=limit, since_id=since_id)
