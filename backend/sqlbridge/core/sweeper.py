"""
Background periodic task (daemon thread) used for pool idle sweeps, rate-limit
window cleanup and transaction expiry.
"""

import logging
import threading
from collections.abc import Callable

_log = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``fn`` every ``interval_sec`` on a daemon thread until stop()."""

    def __init__(self, name: str, interval_sec: float, fn: Callable[[], object]) -> None:
        self._name = name
        self._interval = interval_sec
        self._fn = fn
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._loop, name=self._name, daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._fn()
            except Exception:
                _log.exception("Periodic task %s failed", self._name)
