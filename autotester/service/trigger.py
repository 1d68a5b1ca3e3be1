"""Fire-and-forget test and calibration triggers."""
from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Set

from ..errors import AutotesterError, StoreError
from ..protocol import KIND_CALIBRATION, KIND_TEST, ProtocolDriver, resolve_opcode
from ..scheduling.manager import Clock, utcnow
from ..storage import ConfigStore, Reading, ResultStore

logger = logging.getLogger(__name__)


class OnDemandTrigger:
    """Runs a handshake immediately, outside of any schedule.

    Keys are validated before anything is started; the handshake itself runs
    on a background thread and reports only through the log. Test readings
    land in the same :class:`ResultStore` as scheduled ones.
    """

    def __init__(
        self,
        driver: ProtocolDriver,
        results: ResultStore,
        config_store: ConfigStore,
        clock: Clock = utcnow,
    ) -> None:
        self._driver = driver
        self._results = results
        self._config_store = config_store
        self._clock = clock
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._threads: Set[threading.Thread] = set()

    def trigger(self, key: str) -> None:
        """Start a test for parameter *key*."""

        self._spawn(KIND_TEST, key)

    def calibrate(self, key: str) -> None:
        """Start the calibration sequence named *key* (``pump`` or a parameter)."""

        self._spawn(KIND_CALIBRATION, key)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight triggers; return True when none remain."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [thread for thread in self._threads if thread.is_alive()]
            if not pending:
                return True
            for thread in pending:
                remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
                thread.join(remaining)
            if deadline is not None and time.monotonic() >= deadline:
                with self._lock:
                    return not any(thread.is_alive() for thread in self._threads)

    def stop(self, timeout: Optional[float] = 2.0) -> None:
        """Cancel in-flight handshakes at their next poll and wait for them."""

        with self._lock:
            cancel, self._cancel = self._cancel, threading.Event()
        cancel.set()
        self.join(timeout)

    def _spawn(self, kind: str, key: str) -> None:
        opcode = resolve_opcode(kind, key)
        name = str(key).strip().lower()
        address = self._config_store.get().address
        with self._lock:
            thread = threading.Thread(
                target=self._run,
                name=f'autotester-{kind}-{name}',
                args=(kind, name, address, opcode, self._cancel),
                daemon=True,
            )
            self._threads = {entry for entry in self._threads if entry.is_alive()}
            self._threads.add(thread)
        logger.info("[%s] on-demand %s requested (opcode 0x%02x)", name, kind, opcode)
        thread.start()

    def _run(self, kind: str, key: str, address: int, opcode: int, cancel: threading.Event) -> None:
        tag = key if kind == KIND_TEST else f"calibrate:{key}"
        try:
            value = self._driver.execute_test(address, opcode, key=tag, cancel=cancel)
        except AutotesterError as exc:
            logger.warning("[%s] on-demand %s failed: %s", tag, kind, exc)
        else:
            if kind == KIND_TEST:
                try:
                    record_id = self._results.append(Reading(parameter=key, value=value, timestamp=self._clock()))
                except StoreError as exc:
                    logger.error("[%s] could not store reading %s: %s", tag, value, exc)
                else:
                    logger.info("[%s] stored on-demand reading %s = %s", tag, record_id, value)
            else:
                logger.info("[%s] calibration finished, device returned %s", tag, value)
