"""Analyzer wire protocol."""
from __future__ import annotations

from .driver import ProtocolDriver, decode_result
from .opcodes import (
    CALIBRATION_KEYS,
    KIND_CALIBRATION,
    KIND_TEST,
    OPCODES,
    normalise_parameter,
    resolve_opcode,
)

__all__ = [
    "CALIBRATION_KEYS",
    "KIND_CALIBRATION",
    "KIND_TEST",
    "OPCODES",
    "ProtocolDriver",
    "decode_result",
    "normalise_parameter",
    "resolve_opcode",
]
