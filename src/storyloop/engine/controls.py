"""File-based interactive controls sampled between iterations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)

STOP_FILENAME = "stop"
PAUSE_FILENAME = "pause"
SKIP_FILENAME = "skip"


class ControlFiles:
    """Stop, pause and skip requests written by `storyloop stop|pause|skip`.

    The scheduler only looks at these between iterations, so a request never
    interrupts an executor that is already running.
    """

    def __init__(self, control_dir: Path) -> None:
        self.control_dir = control_dir

    @property
    def stop_path(self) -> Path:
        return self.control_dir / STOP_FILENAME

    @property
    def pause_path(self) -> Path:
        return self.control_dir / PAUSE_FILENAME

    @property
    def skip_path(self) -> Path:
        return self.control_dir / SKIP_FILENAME

    def request_stop(self) -> None:
        self._touch(self.stop_path)

    def request_pause(self) -> None:
        self._touch(self.pause_path)

    def request_skip(self) -> None:
        self._touch(self.skip_path)

    def resume(self) -> bool:
        """Remove a pause request; returns False if none was set."""

        if not self.pause_path.exists():
            return False
        self.pause_path.unlink(missing_ok=True)
        return True

    def stop_requested(self) -> bool:
        return self.stop_path.exists()

    def paused(self) -> bool:
        return self.pause_path.exists()

    def consume_stop(self) -> bool:
        if not self.stop_path.exists():
            return False
        self.stop_path.unlink(missing_ok=True)
        return True

    def consume_skip(self) -> bool:
        if not self.skip_path.exists():
            return False
        self.skip_path.unlink(missing_ok=True)
        return True

    def clear_stale(self) -> list[str]:
        """Drop stop and skip requests left over from a previous session."""

        cleared = [path.name for path in (self.stop_path, self.skip_path) if path.exists()]
        for name in cleared:
            (self.control_dir / name).unlink(missing_ok=True)
        if cleared:
            logger.info("Cleared stale control requests: %s", ", ".join(cleared))
        return cleared

    def wait_while_paused(
        self,
        *,
        sleep: Callable[[float], None],
        should_abort: Callable[[], bool],
        poll_seconds: float = 1.0,
    ) -> None:
        if not self.paused():
            return
        logger.info("Paused; remove %s or run `storyloop resume` to continue", self.pause_path)
        while self.paused() and not should_abort() and not self.stop_requested():
            sleep(poll_seconds)
        logger.info("Resumed")

    def _touch(self, path: Path) -> None:
        self.control_dir.mkdir(parents=True, exist_ok=True)
        path.touch()
