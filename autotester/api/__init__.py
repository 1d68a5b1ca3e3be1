"""HTTP boundary for the auto-tester."""
from __future__ import annotations

from .server import ApiServer, create_app

__all__ = [
    "ApiServer",
    "create_app",
]
