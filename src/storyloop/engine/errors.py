"""Exception taxonomy for the execution engine."""

from __future__ import annotations

from pathlib import Path


class EngineError(RuntimeError):
    """Base class for engine failures surfaced to the CLI."""


class StoreError(EngineError):
    """Job store could not be read or written."""


class StoreCorruptError(StoreError):
    """Index or job files are missing, unparseable or inconsistent."""


class InvariantViolation(StoreError):
    """A mutation would break a store invariant."""


class UnknownJobError(StoreError):
    """Operation referenced a job id that is not in the store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Unknown job id: {job_id}")
        self.job_id = job_id


class MergeFailure(EngineError):
    """Inbox artifact could not be merged into the store."""

    def __init__(self, message: str, *, dead_letter_path: Path | None = None) -> None:
        super().__init__(message)
        self.dead_letter_path = dead_letter_path


class ExecutorLaunchError(EngineError):
    """Executor process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
