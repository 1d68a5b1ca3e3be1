"""Test/calibration handshake against the analyzer.

A handshake is three phases run back to back while the bus is held:

1. write the command opcode,
2. poll ``0x31`` until the device reports idle (``0``) or error (``2``),
3. write ``0x32`` and read a 4 byte little-endian float.

Polling has no upper bound; a stalled device keeps the caller waiting until
the device recovers or the caller's cancellation token fires.
"""
from __future__ import annotations

import logging
import struct
import threading
from typing import Optional

from ..constants import (
    DEFAULT_POLL_INTERVAL_S,
    OP_QUERY_STATUS,
    OP_READ_RESULT,
    RESULT_LENGTH,
    STATUS_ERROR,
    STATUS_IDLE,
)
from ..errors import AutotesterError, DeviceError, HandshakeCancelled, MalformedResponse
from ..hardware import SharedBus
from .opcodes import describe_opcode

logger = logging.getLogger(__name__)


def decode_result(payload: bytes) -> float:
    """Decode the result payload as a little-endian IEEE-754 float32."""

    if len(payload) != RESULT_LENGTH:
        raise MalformedResponse(RESULT_LENGTH, bytes(payload))
    return struct.unpack('<f', bytes(payload))[0]


class ProtocolDriver:
    """Runs handshakes on a :class:`SharedBus`."""

    def __init__(self, bus: SharedBus, poll_interval_s: float = DEFAULT_POLL_INTERVAL_S) -> None:
        self._bus = bus
        self._poll_interval_s = max(poll_interval_s, 0.0)

    @property
    def bus(self) -> SharedBus:
        return self._bus

    def execute_test(
        self,
        address: int,
        opcode: int,
        key: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> float:
        """Run one handshake and return the decoded reading."""

        tag = key or describe_opcode(opcode)
        try:
            with self._bus.transaction(tag):
                self._bus.write_bytes(address, bytes([opcode]))
                polls = self._poll_until_idle(address, cancel)
                self._bus.write_bytes(address, bytes([OP_READ_RESULT]))
                value = decode_result(self._bus.read_bytes(address, RESULT_LENGTH))
        except HandshakeCancelled:
            logger.warning("[%s] handshake 0x%02x cancelled while polling", tag, opcode)
            raise
        except AutotesterError as exc:
            logger.error("[%s] handshake 0x%02x failed: %s: %s", tag, opcode, type(exc).__name__, exc)
            raise
        logger.info("[%s] handshake 0x%02x ok after %d poll(s): %s", tag, opcode, polls, value)
        return value

    def query_status(self, address: int) -> int:
        """Return the raw status byte (0 idle, 2 error, anything else busy)."""

        with self._bus.transaction('status'):
            return self._read_status(address)

    def _read_status(self, address: int) -> int:
        self._bus.write_bytes(address, bytes([OP_QUERY_STATUS]))
        payload = self._bus.read_bytes(address, 1)
        if len(payload) != 1:
            raise MalformedResponse(1, payload)
        return payload[0]

    def _poll_until_idle(self, address: int, cancel: Optional[threading.Event]) -> int:
        waiter = cancel if cancel is not None else threading.Event()
        polls = 0
        while True:
            if waiter.wait(self._poll_interval_s):
                raise HandshakeCancelled(f"cancelled after {polls} poll(s)")
            status = self._read_status(address)
            polls += 1
            if status == STATUS_IDLE:
                return polls
            if status == STATUS_ERROR:
                raise DeviceError(f"device 0x{address:02x} reported error status", status)
