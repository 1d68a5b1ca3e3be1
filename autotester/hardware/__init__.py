"""Hardware abstraction helpers."""
from __future__ import annotations

from .bus import (
    BusLockStats,
    BusTransport,
    I2CBus,
    SharedBus,
    SimulatedBus,
    create_bus,
)

__all__ = [
    "BusLockStats",
    "BusTransport",
    "I2CBus",
    "SharedBus",
    "SimulatedBus",
    "create_bus",
]
