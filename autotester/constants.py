"""Shared constants describing the analyzer wire protocol."""
from __future__ import annotations

OP_QUERY_STATUS = 0x31
OP_READ_RESULT = 0x32

STATUS_IDLE = 0
STATUS_ERROR = 2

RESULT_LENGTH = 4

DEFAULT_ADDRESS = 0x10
DEFAULT_POLL_INTERVAL_S = 0.5

CONFIG_BUCKET = "autotester"
CONFIG_ID = "autotester"
READINGS_BUCKET = "autotester_readings"

# Ordered as the device numbers its test opcodes.
PARAMETERS = ("ca", "alk", "mg", "no3", "po4")

PARAMETER_LABELS = {
    "ca": "Ca",
    "alk": "Alk",
    "mg": "Mg",
    "no3": "NO3",
    "po4": "PO4",
}
