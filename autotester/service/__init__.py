"""Service lifecycle helpers."""
from __future__ import annotations

from .controller import AutotesterController
from .runner import ServiceRunner
from .supervisor import Supervisor, SupervisorOptions, WorkerHandle
from .trigger import OnDemandTrigger

__all__ = [
    "AutotesterController",
    "OnDemandTrigger",
    "ServiceRunner",
    "Supervisor",
    "SupervisorOptions",
    "WorkerHandle",
]
