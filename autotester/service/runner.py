"""Runs the controller and its HTTP API until asked to stop."""
from __future__ import annotations

import logging
import threading
from typing import Optional, Tuple

from ..api.server import ApiServer
from .controller import AutotesterController

logger = logging.getLogger(__name__)


class ServiceRunner:
    """Convenience wrapper binding controller lifecycle and the API server."""

    def __init__(
        self,
        controller: AutotesterController,
        api_host: Optional[str] = None,
        api_port: int = 0,
    ) -> None:
        self.controller = controller
        self._stop_requested = threading.Event()
        self._api_server: Optional[ApiServer] = None
        if api_host is not None:
            self._api_server = ApiServer(controller, host=api_host, port=api_port)

    @property
    def api_address(self) -> Optional[Tuple[str, int]]:
        if self._api_server:
            return self._api_server.address
        return None

    def request_stop(self) -> None:
        self._stop_requested.set()

    def run(self) -> None:
        """Start everything, block until :meth:`request_stop`, then shut down."""

        self.controller.start()
        if self._api_server:
            self._api_server.start()
        try:
            self._stop_requested.wait()
        finally:
            if self._api_server:
                self._api_server.stop()
            self.controller.stop()
            logger.info("auto-tester service stopped")
