"""Process configuration for the auto-tester controller.

This covers how the process reaches its collaborators (bus, database, HTTP
listener, log sinks). The user-facing test schedule lives in the database and
is handled by :mod:`autotester.storage.stores`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .constants import DEFAULT_POLL_INTERVAL_S

SUPPORTED_TRANSPORTS = {'i2c', 'sim'}


@dataclass(slots=True)
class BusConfig:
    """Bus transport selection and simulator behaviour."""

    transport: str = 'i2c'
    bus: int = 1
    sim_busy_polls: int = 2
    sim_fail_opcodes: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        candidate = (self.transport or 'i2c').strip().lower()
        if candidate not in SUPPORTED_TRANSPORTS:
            allowed = ', '.join(sorted(SUPPORTED_TRANSPORTS))
            raise ValueError(f"transport must be one of {allowed}")
        self.transport = candidate
        try:
            self.bus = int(self.bus)
        except (TypeError, ValueError):
            self.bus = 1
        if self.sim_busy_polls < 0:
            self.sim_busy_polls = 0
        self.sim_fail_opcodes = tuple(int(str(op), 0) for op in (self.sim_fail_opcodes or ()))


@dataclass(slots=True)
class DriverConfig:
    """Handshake timing."""

    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S

    def __post_init__(self) -> None:
        try:
            interval = float(self.poll_interval_s)
        except (TypeError, ValueError):
            interval = DEFAULT_POLL_INTERVAL_S
        self.poll_interval_s = max(interval, 0.0)


@dataclass(slots=True)
class SchedulerConfig:
    """Time zone that cron rules are evaluated in."""

    timezone: str = 'UTC'

    def __post_init__(self) -> None:
        self.timezone = str(self.timezone or 'UTC').strip()
        self.zone()

    def zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
            raise ValueError(f"unknown time zone {self.timezone!r}") from exc


@dataclass(slots=True)
class StorageConfig:
    """Database location."""

    database_path: Path = Path("data/autotester.sqlite")
    ensure_directories: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.database_path, str):
            self.database_path = Path(self.database_path)


@dataclass(slots=True)
class ApiConfig:
    """HTTP boundary listener."""

    enabled: bool = True
    host: str = '127.0.0.1'
    port: int = 8080


@dataclass(slots=True)
class LoggingConfig:
    """Console/file logging and persisted audit events."""

    level: str = 'INFO'
    file: Optional[Path] = None
    audit_level: str = 'WARNING'

    def __post_init__(self) -> None:
        self.level = self._normalise_level(self.level, 'level')
        self.audit_level = self._normalise_level(self.audit_level, 'audit_level')
        if isinstance(self.file, str):
            self.file = Path(self.file) if self.file else None

    @staticmethod
    def _normalise_level(value: Optional[str], label: str) -> str:
        candidate = str(value or 'INFO').strip().upper()
        if not isinstance(logging.getLevelName(candidate), int):
            raise ValueError(f"{label} must be a logging level name, got {value!r}")
        return candidate


@dataclass(slots=True)
class ServiceConfig:
    """Supervisor behaviour."""

    join_timeout_s: float = 2.0

    def __post_init__(self) -> None:
        if self.join_timeout_s <= 0:
            self.join_timeout_s = 2.0


@dataclass(slots=True)
class AppConfig:
    """Top-level application configuration bundle."""

    bus: BusConfig = field(default_factory=BusConfig)
    driver: DriverConfig = field(default_factory=DriverConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        """Create a configuration instance from a nested dictionary."""

        def _section(name: str, factory: Any) -> Any:
            data = payload.get(name, {}) if payload else {}
            if isinstance(data, dict):
                return factory(**data)
            raise TypeError(f"Expected mapping for section '{name}', got {type(data).__name__}")

        return cls(
            bus=_section("bus", BusConfig),
            driver=_section("driver", DriverConfig),
            scheduler=_section("scheduler", SchedulerConfig),
            storage=_section("storage", StorageConfig),
            api=_section("api", ApiConfig),
            logging=_section("logging", LoggingConfig),
            service=_section("service", ServiceConfig),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return a serialisable representation of the configuration."""

        def _asdict(obj: Any) -> Dict[str, Any]:
            return {name: getattr(obj, name) for name in obj.__dataclass_fields__}  # type: ignore[attr-defined]

        logging_payload = _asdict(self.logging)
        logging_payload['file'] = str(self.logging.file) if self.logging.file else None
        bus_payload = _asdict(self.bus)
        bus_payload['sim_fail_opcodes'] = list(self.bus.sim_fail_opcodes)

        return {
            'bus': bus_payload,
            'driver': _asdict(self.driver),
            'scheduler': _asdict(self.scheduler),
            'storage': {**_asdict(self.storage), 'database_path': str(self.storage.database_path)},
            'api': _asdict(self.api),
            'logging': logging_payload,
            'service': _asdict(self.service),
        }


def load_config(path: Optional[Path]) -> AppConfig:
    """Load configuration from *path* if provided, otherwise return defaults."""

    if path is None:
        return AppConfig()
    resolved = Path(path).expanduser()
    if not resolved.exists():
        return AppConfig()
    payload: Dict[str, Any]
    suffix = resolved.suffix.lower()
    if suffix in {".json", ".jsn"}:
        payload = _load_json(resolved)
    elif suffix in {".toml", ".tml"}:
        payload = _load_toml(resolved)
    elif suffix in {".yaml", ".yml"}:
        payload = _load_yaml(resolved)
    else:
        raise ValueError(f"Unsupported configuration format: {resolved.suffix}")
    return AppConfig.from_dict(payload)


def _load_json(path: Path) -> Dict[str, Any]:
    import json

    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _load_toml(path: Path) -> Dict[str, Any]:
    import tomllib

    with path.open("rb") as handle:
        return tomllib.load(handle)


def _load_yaml(path: Path) -> Dict[str, Any]:
    import yaml

    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}
