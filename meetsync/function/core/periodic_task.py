"""Run a maintenance callable on a daemon thread at a fixed interval."""

from __future__ import annotations

import logging
import threading
from typing import Callable

__all__ = ["PeriodicTask"]

logger = logging.getLogger(__name__)


class PeriodicTask:
    """``func`` を ``interval_sec`` 秒ごとにバックグラウンドで実行します。

    ``run_immediately`` が真なら開始直後に 1 回実行します。例外はログに残して
    次の周期へ進み、スレッドは止めません。
    """

    def __init__(
        self,
        name: str,
        interval_sec: float,
        func: Callable[[], object],
        *,
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self.interval_sec = float(interval_sec)
        self._func = func
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.interval_sec <= 0:
            logger.info("Periodic task %s disabled (interval=%s)", self.name, self.interval_sec)
            return False
        if self.is_running:
            logger.warning("Periodic task %s already running", self.name)
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"meetsync-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info("Periodic task %s started (interval: %ss)", self.name, self.interval_sec)
        return True

    def stop(self, timeout: float | None = 2.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Periodic task %s stopped", self.name)

    def _loop(self) -> None:
        if self._run_immediately:
            self._run_safely()
        while not self._stop_event.wait(self.interval_sec):
            self._run_safely()

    def _run_safely(self) -> None:
        try:
            self._func()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)
