"""Typed access to the singleton configuration and the readings log."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..constants import CONFIG_BUCKET, CONFIG_ID, DEFAULT_ADDRESS, PARAMETERS, READINGS_BUCKET
from ..errors import ConfigError
from ..protocol.opcodes import normalise_parameter
from .database import Database

logger = logging.getLogger(__name__)

MAX_ADDRESS = 0x7F


@dataclass(slots=True)
class ParameterSchedule:
    """Whether a parameter is tested and on which recurrence rule."""

    enable: bool = False
    schedule: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.enable, bool):
            raise ConfigError(f"enable must be true or false, got {self.enable!r}")
        if self.schedule is None:
            self.schedule = ""
        if not isinstance(self.schedule, str):
            raise ConfigError(f"schedule must be a string, got {self.schedule!r}")
        self.schedule = self.schedule.strip()

    def to_dict(self) -> Dict[str, Any]:
        return {'enable': self.enable, 'schedule': self.schedule}


def _default_parameters() -> Dict[str, ParameterSchedule]:
    return {key: ParameterSchedule() for key in PARAMETERS}


@dataclass(slots=True)
class AutotesterConfig:
    """Singleton configuration record.

    Schedules use cron syntax; a sixth field, when present, is seconds.
    Rules are matched against wall-clock time in the zone named by the
    process setting ``scheduler.timezone`` (UTC unless configured).
    """

    address: int = DEFAULT_ADDRESS
    enable: bool = True
    parameters: Dict[str, ParameterSchedule] = field(default_factory=_default_parameters)
    id: str = CONFIG_ID

    def __post_init__(self) -> None:
        self.id = CONFIG_ID
        if isinstance(self.address, str):
            try:
                self.address = int(self.address, 0)
            except ValueError as exc:
                raise ConfigError(f"address must be an integer, got {self.address!r}") from exc
        if isinstance(self.address, bool) or not isinstance(self.address, int):
            raise ConfigError(f"address must be an integer, got {self.address!r}")
        if not 0 < self.address <= MAX_ADDRESS:
            raise ConfigError(f"address must be between 0x01 and 0x{MAX_ADDRESS:02x}, got 0x{self.address:02x}")
        if not isinstance(self.enable, bool):
            raise ConfigError(f"enable must be true or false, got {self.enable!r}")
        if self.parameters is not None and not isinstance(self.parameters, dict):
            raise ConfigError(f"parameters must be a mapping, got {type(self.parameters).__name__}")
        normalised = _default_parameters()
        for key, value in (self.parameters or {}).items():
            try:
                name = normalise_parameter(key)
            except KeyError as exc:
                raise ConfigError(str(exc)) from exc
            if isinstance(value, ParameterSchedule):
                normalised[name] = value
            elif isinstance(value, dict):
                normalised[name] = ParameterSchedule(**value)
            else:
                raise ConfigError(f"parameter {name!r} must be a mapping, got {type(value).__name__}")
        self.parameters = normalised

    def enabled_parameters(self) -> List[str]:
        if not self.enable:
            return []
        return [key for key in PARAMETERS if self.parameters[key].enable]

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AutotesterConfig":
        if not isinstance(payload, dict):
            raise ConfigError(f"configuration must be a mapping, got {type(payload).__name__}")
        known = {'address', 'enable', 'parameters', 'id'}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ConfigError(f"unknown configuration field(s): {', '.join(unknown)}")
        try:
            return cls(**payload)
        except TypeError as exc:
            raise ConfigError(str(exc)) from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'address': self.address,
            'enable': self.enable,
            'parameters': {key: self.parameters[key].to_dict() for key in PARAMETERS},
        }


@dataclass(slots=True, frozen=True)
class Reading:
    """One completed measurement."""

    parameter: str
    value: float
    timestamp: datetime
    id: Optional[str] = None

    def to_record(self, record_id: str) -> Dict[str, Any]:
        return {
            'id': record_id,
            'parameter': self.parameter,
            'value': self.value,
            'timestamp': self.timestamp.astimezone(timezone.utc).isoformat(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Reading":
        timestamp = datetime.fromisoformat(record['timestamp'])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            parameter=record['parameter'],
            value=float(record['value']),
            timestamp=timestamp,
            id=record.get('id'),
        )


class ConfigStore:
    """Read/write the singleton :class:`AutotesterConfig`."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def get(self) -> AutotesterConfig:
        record = self._database.get(CONFIG_BUCKET, CONFIG_ID)
        if record is None:
            return AutotesterConfig()
        return AutotesterConfig.from_dict(record)

    def save(self, config: AutotesterConfig) -> None:
        self._database.update(CONFIG_BUCKET, CONFIG_ID, config.to_dict())
        logger.info("configuration saved: address=0x%02x enabled=%s", config.address, config.enabled_parameters())


class ResultStore:
    """Append-only log of :class:`Reading` records."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def append(self, reading: Reading) -> str:
        parameter = normalise_parameter(reading.parameter)
        return self._database.create(
            READINGS_BUCKET,
            lambda record_id: {**reading.to_record(record_id), 'parameter': parameter},
        )

    def readings(self, key: str) -> List[Reading]:
        parameter = normalise_parameter(key)
        matches: List[Reading] = []

        def _visit(_record_id: str, record: Dict[str, Any]) -> None:
            if record.get('parameter') == parameter:
                matches.append(Reading.from_record(record))

        self._database.list(READINGS_BUCKET, _visit)
        return matches

    def list_by_parameter(self, key: str) -> List[Tuple[datetime, float]]:
        """Return ``(timestamp, value)`` pairs for *key* in store order."""

        return [(reading.timestamp, reading.value) for reading in self.readings(key)]
