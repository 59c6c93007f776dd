"""Executor interface for one dispatch of a job."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class ExecutorRequest:
    """Inputs required to run one executor process."""

    job_id: str
    model: str
    instructions: str
    session_id: str
    run_dir: Path
    label: str = "main"
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float = 0.0


@dataclass(slots=True)
class ExecutorResult:
    """Captured output of a finished executor process."""

    exit_code: int
    stdout: str
    stderr: str = ""
    pid: int | None = None
    stdout_path: Path | None = None
    stderr_path: Path | None = None


class Executor(Protocol):
    """Protocol implemented by executor adapters."""

    def run(self, request: ExecutorRequest) -> ExecutorResult:
        """Run the executor to completion and return its output."""
