"""Validated mapping from parameter/calibration keys to device opcodes."""
from __future__ import annotations

from typing import Dict, Tuple

from ..constants import PARAMETERS
from ..errors import UnknownKey

KIND_TEST = "test"
KIND_CALIBRATION = "calibration"

OPCODES: Dict[Tuple[str, str], int] = {
    (KIND_TEST, "ca"): 0x11,
    (KIND_TEST, "alk"): 0x12,
    (KIND_TEST, "mg"): 0x13,
    (KIND_TEST, "no3"): 0x14,
    (KIND_TEST, "po4"): 0x15,
    (KIND_CALIBRATION, "pump"): 0x21,
    (KIND_CALIBRATION, "ca"): 0x22,
    (KIND_CALIBRATION, "alk"): 0x23,
    (KIND_CALIBRATION, "mg"): 0x24,
    (KIND_CALIBRATION, "no3"): 0x25,
    (KIND_CALIBRATION, "po4"): 0x26,
}

CALIBRATION_KEYS = tuple(key for kind, key in OPCODES if kind == KIND_CALIBRATION)


def normalise_parameter(key: str) -> str:
    """Return *key* lower-cased, raising :class:`UnknownKey` outside the parameter set."""

    candidate = str(key or "").strip().lower()
    if candidate not in PARAMETERS:
        raise UnknownKey("parameter", str(key))
    return candidate


def resolve_opcode(kind: str, key: str) -> int:
    candidate = str(key or "").strip().lower()
    try:
        return OPCODES[(kind, candidate)]
    except KeyError:
        raise UnknownKey(kind, str(key)) from None


def describe_opcode(opcode: int) -> str:
    for (kind, key), value in OPCODES.items():
        if value == opcode:
            return f"{kind}:{key}"
    return f"0x{opcode:02x}"
