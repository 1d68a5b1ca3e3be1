"""Bus transports for the analyzer and the lock that serialises them."""
from __future__ import annotations

import logging
import struct
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Protocol, Sequence

from smbus2 import SMBus, i2c_msg

from ..config import BusConfig
from ..constants import OP_QUERY_STATUS, OP_READ_RESULT, STATUS_ERROR, STATUS_IDLE
from ..errors import BusError

logger = logging.getLogger(__name__)

STATUS_BUSY = 1


class BusTransport(Protocol):
    """Raw byte transport addressed by a 7-bit device address."""

    def write_bytes(self, address: int, data: bytes) -> None:  # pragma: no cover - protocol signature
        ...

    def read_bytes(self, address: int, count: int) -> bytes:  # pragma: no cover - protocol signature
        ...

    def close(self) -> None:  # pragma: no cover - protocol signature
        ...


class I2CBus(BusTransport):
    """Linux i2c-dev transport using plain read/write messages."""

    def __init__(self, bus: int = 1) -> None:
        self._bus_number = bus
        self._handle: Optional[SMBus] = None

    def open(self) -> SMBus:
        if self._handle is None:
            try:
                self._handle = SMBus(self._bus_number)
            except OSError as exc:
                raise BusError(f"cannot open i2c bus {self._bus_number}: {exc}") from exc
        return self._handle

    def close(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            finally:
                self._handle = None

    def write_bytes(self, address: int, data: bytes) -> None:
        handle = self.open()
        try:
            handle.i2c_rdwr(i2c_msg.write(address, list(data)))
        except OSError as exc:
            raise BusError(f"write to 0x{address:02x} failed: {exc}", address) from exc

    def read_bytes(self, address: int, count: int) -> bytes:
        handle = self.open()
        message = i2c_msg.read(address, count)
        try:
            handle.i2c_rdwr(message)
        except OSError as exc:
            raise BusError(f"read from 0x{address:02x} failed: {exc}", address) from exc
        return bytes(list(message))

    def __enter__(self) -> "I2CBus":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()


SIMULATED_VALUES: Dict[int, float] = {
    0x11: 420.0,
    0x12: 8.2,
    0x13: 1350.0,
    0x14: 5.0,
    0x15: 0.05,
}


class SimulatedBus(BusTransport):
    """In-memory analyzer used in dev mode and bench runs.

    Each started command reports busy for *busy_polls* status queries before
    going idle (or faulting, for opcodes listed in *fail_opcodes*).
    """

    def __init__(self, busy_polls: int = 2, fail_opcodes: Sequence[int] = ()) -> None:
        self._busy_polls = max(busy_polls, 0)
        self._fail_opcodes = set(fail_opcodes)
        self._remaining: Dict[int, int] = {}
        self._command: Dict[int, int] = {}
        self._pending: Dict[int, bytes] = {}

    def write_bytes(self, address: int, data: bytes) -> None:
        if not data:
            raise BusError("empty write", address)
        opcode = data[0]
        if opcode == OP_QUERY_STATUS:
            self._pending[address] = bytes([self._next_status(address)])
        elif opcode == OP_READ_RESULT:
            command = self._command.get(address)
            value = SIMULATED_VALUES.get(command, 1.0) if command is not None else 0.0
            self._pending[address] = struct.pack('<f', value)
        else:
            logger.debug("simulated analyzer 0x%02x started command 0x%02x", address, opcode)
            self._command[address] = opcode
            self._remaining[address] = self._busy_polls

    def read_bytes(self, address: int, count: int) -> bytes:
        payload = self._pending.pop(address, b'')
        return payload[:count]

    def close(self) -> None:
        self._pending.clear()

    def _next_status(self, address: int) -> int:
        remaining = self._remaining.get(address, 0)
        if remaining > 0:
            self._remaining[address] = remaining - 1
            return STATUS_BUSY
        if self._command.get(address) in self._fail_opcodes:
            return STATUS_ERROR
        return STATUS_IDLE


@dataclass(slots=True)
class BusLockStats:
    """Track bus lock contention for diagnostics."""

    current_owner: Optional[str] = None
    last_wait_s: float = 0.0
    max_wait_s: float = 0.0
    total_wait_s: float = 0.0
    last_hold_s: float = 0.0
    max_hold_s: float = 0.0
    total_hold_s: float = 0.0
    transactions: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}  # type: ignore[attr-defined]


class SharedBus:
    """Owns a transport and guarantees one in-flight transaction at a time."""

    def __init__(self, transport: BusTransport) -> None:
        self._transport = transport
        self._lock = threading.RLock()
        self._stats = BusLockStats()

    @property
    def stats(self) -> BusLockStats:
        return self._stats

    @property
    def transport(self) -> BusTransport:
        return self._transport

    @contextmanager
    def transaction(self, owner: str) -> Iterator["SharedBus"]:
        """Hold the bus for the duration of the ``with`` block."""

        wait_started = time.perf_counter()
        with self._lock:
            acquired = time.perf_counter()
            stats = self._stats
            wait = acquired - wait_started
            stats.last_wait_s = wait
            stats.max_wait_s = max(stats.max_wait_s, wait)
            stats.total_wait_s += wait
            stats.current_owner = owner
            try:
                yield self
            finally:
                hold = time.perf_counter() - acquired
                stats.last_hold_s = hold
                stats.max_hold_s = max(stats.max_hold_s, hold)
                stats.total_hold_s += hold
                stats.transactions += 1
                stats.current_owner = None

    def write_bytes(self, address: int, data: bytes) -> None:
        try:
            self._transport.write_bytes(address, data)
        except OSError as exc:
            raise BusError(f"write to 0x{address:02x} failed: {exc}", address) from exc

    def read_bytes(self, address: int, count: int) -> bytes:
        try:
            return bytes(self._transport.read_bytes(address, count))
        except OSError as exc:
            raise BusError(f"read from 0x{address:02x} failed: {exc}", address) from exc

    def close(self) -> None:
        with self._lock:
            self._transport.close()


def create_bus(config: BusConfig) -> SharedBus:
    """Create a shared bus for *config.transport*."""

    transport = (config.transport or 'i2c').lower()
    if transport == 'i2c':
        return SharedBus(I2CBus(config.bus))
    if transport == 'sim':
        return SharedBus(SimulatedBus(config.sim_busy_polls, config.sim_fail_opcodes))
    raise ValueError(f"Unsupported transport '{config.transport}'")
