"""Optional read-only observer polling the store for progress displays."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from storyloop.engine.models import QueueSnapshot
from storyloop.engine.store import JobStore

logger = logging.getLogger(__name__)


class QueueObserver:
    """Background thread that reads the store and hands snapshots to a callback.

    It opens its own read-only store view on every poll and never mutates it.
    Errors are logged and the thread keeps polling; they never reach the
    scheduler.
    """

    def __init__(
        self,
        *,
        store_dir: Path,
        callback: Callable[[QueueSnapshot], None],
        interval_seconds: float = 2.0,
    ) -> None:
        self.store_dir = store_dir
        self.callback = callback
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="storyloop-observer",
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None

    def __enter__(self) -> QueueObserver:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    def poll_once(self) -> QueueSnapshot:
        return JobStore.open(self.store_dir).snapshot()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.callback(self.poll_once())
            except Exception:
                logger.exception("Queue observer poll failed")
            self._stop.wait(timeout=self.interval_seconds)
