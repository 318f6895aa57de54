from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from printsentry.log import get_logger

logger = get_logger("timers")


class PeriodicTask:
    """Run ``action`` on a daemon thread: once immediately, then every ``interval``.

    ``stop`` and ``rearm`` wake the waiting thread at once.  An exception from
    one cycle is logged and the loop carries on with the next.
    """

    def __init__(self, name: str, action: Callable[[], object], interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.action = action
        self.stop_event = threading.Event()
        self.cycles = 0
        self.last_run: Optional[float] = None
        self._interval = interval
        self._wake = threading.Event()
        self._lock = threading.Lock()
        self.thread: Optional[threading.Thread] = None

    @property
    def interval(self) -> float:
        with self._lock:
            return self._interval

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.stop_event.clear()
        self._wake.clear()
        self.thread = threading.Thread(
            target=self._run, name=f"printsentry-{self.name}", daemon=True
        )
        self.thread.start()
        logger.debug("%s loop armed (every %.1fs)", self.name, self.interval)

    def rearm(self, interval: float) -> None:
        """Switch to a new interval; the next cycle fires immediately."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        with self._lock:
            self._interval = interval
        logger.info("%s loop re-armed (every %.1fs)", self.name, interval)
        self._wake.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_event.set()
        self._wake.set()
        thread = self.thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if timeout and thread.is_alive():
                logger.warning("%s loop did not stop within %.1fs", self.name, timeout)

    def _run(self) -> None:
        while not self.stop_event.is_set():
            self._cycle()
            self._wake.wait(self.interval)
            self._wake.clear()

    def _cycle(self) -> None:
        start = time.monotonic()
        try:
            self.action()
        except Exception:
            logger.exception("%s cycle failed", self.name)
        finally:
            self.cycles += 1
            self.last_run = time.time()
        logger.debug("%s cycle took %.2fs", self.name, time.monotonic() - start)
