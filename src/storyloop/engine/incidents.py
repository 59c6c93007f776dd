"""Timestamped incident, retry-exhaustion and crash postmortem files."""

from __future__ import annotations

import json
import logging
import os
import platform
import subprocess
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from storyloop import __version__
from storyloop.engine.models import Job, OutcomeClass

logger = logging.getLogger(__name__)

_STAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
_OUTPUT_TAIL_LINES = 20
RECENT_CRASH_WINDOW = timedelta(hours=24)


@dataclass(slots=True)
class CrashSummary:
    """Headline of a crash log shown at startup."""

    path: Path
    occurred_at: str
    job_id: str | None
    error: str | None


class IncidentLog:
    """Writes incident records under `logs_dir` and progress notes to a text log."""

    def __init__(self, *, logs_dir: Path, progress_file: Path, working_dir: Path) -> None:
        self.logs_dir = logs_dir
        self.progress_file = progress_file
        self.working_dir = working_dir
        self._lock = threading.Lock()

    def write_incident(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        outcome: OutcomeClass,
        attempt: int,
        budget: int,
        session_id: str,
        details: dict[str, object],
        output: str = "",
    ) -> Path:
        """Record one failed attempt that will be retried or has exhausted its budget."""

        path = self._unique_path(f"incident-{_stamp()}-{outcome.value}")
        lines = [
            f"# Incident: {outcome.value}",
            f"Timestamp: {_now().isoformat(timespec='seconds')}",
            f"Job: {job_id}",
            f"Attempt: {attempt}/{budget}",
            f"Session: {session_id}",
            "",
            "## Classification",
            json.dumps(details, indent=2, sort_keys=True, default=str),
            "",
            "## Output Tail",
            _tail(output) or "(no output)",
        ]
        self._write(path, lines)
        return path

    def write_exhaustion(
        self,
        *,
        job_id: str,
        outcome: OutcomeClass,
        attempts: int,
        last_incident: Path | None,
        job_blocked: bool,
    ) -> Path:
        path = self._unique_path(f"retry-exhausted-{_stamp()}")
        action = "job moved to blocked" if job_blocked else "job left pending"
        lines = [
            "# Retry Budget Exhausted",
            f"Timestamp: {_now().isoformat(timespec='seconds')}",
            f"Job: {job_id}",
            f"Error class: {outcome.value}",
            f"Attempts: {attempts}",
            f"Action: {action}",
            f"Last incident: {last_incident or '(none)'}",
        ]
        self._write(path, lines)
        self.append_progress(
            f"## Retry exhausted for {job_id}",
            [f"{attempts} x {outcome.value}; {action}.", f"Details: {path}"],
        )
        return path

    def write_crash(
        self,
        *,
        iteration: int | None,
        job: Job | None,
        error: str,
        output: str = "",
    ) -> Path:
        """Postmortem for an engine failure that stopped the loop."""

        path = self._unique_path(f"crash-{_stamp()}")
        unchecked = job.first_unchecked() if job is not None else None
        lines = [
            "# storyloop crash log",
            f"Timestamp: {_now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Working Dir: {self.working_dir.resolve()}",
            "",
            "## State at Crash",
            f"Iteration: {iteration if iteration is not None else 'unknown'}",
            f"Story: {job.id if job is not None else 'unknown'}",
            f"Criteria: {unchecked[1].text if unchecked is not None else 'unknown'}",
            "",
            "## Error",
            error,
            "",
            "## Output Tail",
            _tail(output) or "(no output)",
            "",
            "## Recent Git",
            self._recent_git(),
            "",
            "## Environment",
            f"storyloop: {__version__}",
            f"Python: {sys.version.split()[0]}",
            f"Platform: {platform.platform()}",
            f"PID: {os.getpid()}",
        ]
        self._write(path, lines)
        logger.error("Crash log written to %s", path)
        return path

    def crash_logs(self, limit: int | None = None) -> list[Path]:
        """Crash logs, newest first."""

        if not self.logs_dir.exists():
            return []
        logs = sorted(
            self.logs_dir.glob("crash-*.log"),
            key=lambda path: (path.stat().st_mtime_ns, path.name),
            reverse=True,
        )
        return logs[:limit] if limit is not None else logs

    def recent_crash(self, *, window: timedelta = RECENT_CRASH_WINDOW) -> CrashSummary | None:
        """Most recent crash log written within `window`, if any."""

        cutoff = _now() - window
        for path in self.crash_logs():
            modified = datetime.fromtimestamp(path.stat().st_mtime).astimezone()
            if modified < cutoff:
                return None
            return summarize_crash(path)
        return None

    def append_progress(self, heading: str, lines: list[str]) -> None:
        with self._lock:
            self.progress_file.parent.mkdir(parents=True, exist_ok=True)
            with self.progress_file.open("a", encoding="utf-8") as handle:
                handle.write(f"\n{heading}\n")
                handle.write(f"Timestamp: {_now().isoformat(timespec='seconds')}\n")
                for line in lines:
                    handle.write(f"{line}\n")

    def _recent_git(self) -> str:
        try:
            completed = subprocess.run(
                ["git", "log", "-3", "--oneline"],  # noqa: S607
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return "(git log unavailable)"
        if completed.returncode != 0:
            return "(git log unavailable)"
        return completed.stdout.strip() or "(no commits)"

    def _unique_path(self, stem: str) -> Path:
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        path = self.logs_dir / f"{stem}.log"
        counter = 2
        while path.exists():
            path = self.logs_dir / f"{stem}-{counter}.log"
            counter += 1
        return path

    def _write(self, path: Path, lines: list[str]) -> None:
        path.write_text("\n".join(lines) + "\n", "utf-8")


def summarize_crash(path: Path) -> CrashSummary:
    """Pull the story id and first error line out of a crash log."""

    job_id: str | None = None
    error: str | None = None
    lines = path.read_text("utf-8", errors="replace").splitlines()
    for position, line in enumerate(lines):
        if line.startswith("Story:") and job_id is None:
            value = line.partition(":")[2].strip()
            job_id = value if value and value != "unknown" else None
        if line == "## Error" and position + 1 < len(lines):
            error = lines[position + 1].strip() or None
    occurred_at = path.stem.removeprefix("crash-").replace("_", " ")
    return CrashSummary(path=path, occurred_at=occurred_at, job_id=job_id, error=error)


def _tail(text: str, lines: int = _OUTPUT_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def _now() -> datetime:
    return datetime.now().astimezone()


def _stamp() -> str:
    return _now().strftime(_STAMP_FORMAT)
