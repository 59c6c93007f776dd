"""Process/session registry for orphan detection and postmortems."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import psutil

from storyloop.engine.contracts import write_text_atomic

logger = logging.getLogger(__name__)

# Recorded start time and the live process may differ by clock granularity.
_START_TIME_TOLERANCE_SECONDS = 2.0


@dataclass(frozen=True, slots=True)
class TrackedProcess:
    """One registry line: `pid type timestamp parentPid`."""

    pid: int
    kind: str
    timestamp: int
    parent_pid: int

    def to_line(self) -> str:
        return f"{self.pid} {self.kind} {self.timestamp} {self.parent_pid}"

    @classmethod
    def from_line(cls, line: str) -> TrackedProcess:
        parts = line.split()
        if len(parts) != 4:  # noqa: PLR2004
            raise ValueError(f"Malformed registry line: {line!r}")
        return cls(
            pid=int(parts[0]),
            kind=parts[1],
            timestamp=int(parts[2]),
            parent_pid=int(parts[3]),
        )


@dataclass(frozen=True, slots=True)
class OrphanProcess:
    """Executor process that outlived the engine session that spawned it."""

    pid: int
    kind: str
    parent_pid: int
    started_at: int
    command: str


class ProcessRegistry:
    """Append-only record of spawned executor processes.

    Safe to share between verification threads of one engine process.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def track(self, pid: int, *, kind: str, parent_pid: int | None = None) -> TrackedProcess:
        entry = TrackedProcess(
            pid=pid,
            kind=kind,
            timestamp=int(time.time()),
            parent_pid=parent_pid if parent_pid is not None else os.getpid(),
        )
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(entry.to_line() + "\n")
        logger.debug("Tracking %s process %d (parent %d)", kind, pid, entry.parent_pid)
        return entry

    def untrack(self, pid: int) -> None:
        self._rewrite(lambda entry: entry.pid != pid)

    def untrack_session(self, parent_pid: int | None = None) -> None:
        """Drop every entry spawned by `parent_pid` (this process by default)."""

        owner = parent_pid if parent_pid is not None else os.getpid()
        self._rewrite(lambda entry: entry.parent_pid != owner)

    def entries(self) -> list[TrackedProcess]:
        if not self.path.exists():
            return []
        entries: list[TrackedProcess] = []
        for line in self.path.read_text("utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(TrackedProcess.from_line(line))
            except ValueError:
                logger.debug("Skipping malformed registry line %r", line)
        return entries

    def find_orphans(self) -> list[OrphanProcess]:
        """Entries whose parent is gone while the tracked process still runs."""

        orphans: list[OrphanProcess] = []
        for entry in self.entries():
            if entry.parent_pid == os.getpid() or _is_alive(entry.parent_pid):
                continue
            process = _live_process(entry)
            if process is None:
                continue
            try:
                command = " ".join(process.cmdline())
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                command = ""
            orphans.append(
                OrphanProcess(
                    pid=entry.pid,
                    kind=entry.kind,
                    parent_pid=entry.parent_pid,
                    started_at=entry.timestamp,
                    command=command,
                ),
            )
        return orphans

    def prune(self) -> int:
        """Remove entries whose process is gone; returns how many were dropped."""

        before = len(self.entries())
        self._rewrite(lambda entry: _live_process(entry) is not None)
        return before - len(self.entries())

    def kill_orphans(self, orphans: list[OrphanProcess], *, timeout: float = 5.0) -> list[int]:
        """Terminate orphans and their children, force-killing survivors."""

        killed: list[int] = []
        for orphan in orphans:
            try:
                process = psutil.Process(orphan.pid)
                children = process.children(recursive=True)
            except psutil.NoSuchProcess:
                self.untrack(orphan.pid)
                continue
            except psutil.AccessDenied:
                logger.warning("No permission to terminate orphan %d", orphan.pid)
                continue
            targets = [process, *children]
            for target in targets:
                try:
                    target.terminate()
                except psutil.NoSuchProcess:
                    continue
            _, alive = psutil.wait_procs(targets, timeout=timeout)
            for survivor in alive:
                try:
                    survivor.kill()
                except psutil.NoSuchProcess:
                    continue
            self.untrack(orphan.pid)
            killed.append(orphan.pid)
            logger.info("Killed orphan %s process %d", orphan.kind, orphan.pid)
        return killed

    def _rewrite(self, keep: Callable[[TrackedProcess], bool]) -> None:
        with self._lock:
            if not self.path.exists():
                return
            kept = [entry.to_line() for entry in self.entries() if keep(entry)]
            write_text_atomic(self.path, "".join(f"{line}\n" for line in kept))


def _is_alive(pid: int) -> bool:
    try:
        process = psutil.Process(pid)
        return process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def _live_process(entry: TrackedProcess) -> psutil.Process | None:
    """The running process for `entry`, unless its pid was reused."""

    try:
        process = psutil.Process(entry.pid)
        if process.status() == psutil.STATUS_ZOMBIE:
            return None
        if process.create_time() > entry.timestamp + _START_TIME_TOLERANCE_SECONDS:
            return None
    except psutil.NoSuchProcess:
        return None
    except psutil.AccessDenied:
        return None
    return process
