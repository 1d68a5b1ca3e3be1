"""Persistence primitives."""
from __future__ import annotations

from .database import AuditEvent, Database
from .stores import AutotesterConfig, ConfigStore, ParameterSchedule, Reading, ResultStore

__all__ = [
    "AuditEvent",
    "AutotesterConfig",
    "ConfigStore",
    "Database",
    "ParameterSchedule",
    "Reading",
    "ResultStore",
]
