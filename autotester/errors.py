"""Exception hierarchy shared by the auto-tester components."""
from __future__ import annotations

from typing import Optional


class AutotesterError(RuntimeError):
    """Base class for every failure raised by the auto-tester."""


class BusError(AutotesterError):
    """Transport-level I/O failure while talking to the bus."""

    def __init__(self, message: str, address: Optional[int] = None) -> None:
        super().__init__(message)
        self.address = address


class DeviceError(AutotesterError):
    """The analyzer reported its fault status."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedResponse(AutotesterError):
    """A read returned an unexpected number of bytes."""

    def __init__(self, expected: int, payload: bytes) -> None:
        super().__init__(f"expected {expected} byte(s), got {len(payload)}: {payload.hex(' ') or '<empty>'}")
        self.expected = expected
        self.payload = payload


class HandshakeCancelled(AutotesterError):
    """Raised when a cancellation token fires while a handshake is polling."""


class InvalidSchedule(AutotesterError):
    """A recurrence rule could not be parsed."""

    def __init__(self, rule: str, reason: str) -> None:
        super().__init__(f"invalid schedule {rule!r}: {reason}")
        self.rule = rule
        self.reason = reason


class StoreError(AutotesterError):
    """Persistence failure in the underlying store."""


class ConfigError(AutotesterError, ValueError):
    """Configuration record failed validation."""


class UnknownKey(AutotesterError, KeyError):
    """A parameter or calibration key outside the closed set was requested."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"unknown {kind} key {key!r}")
        self.kind = kind
        self.key = key

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
