"""Shared test fixtures."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from storyloop.config import EngineConfig, LoopSettings, RetrySettings
from storyloop.engine.backend.base import ExecutorRequest, ExecutorResult
from storyloop.engine.models import BlockReason, Criterion, Job
from storyloop.engine.store import JobStore

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m storyloop.engine.backend.echo_agent --prompt-file {{prompt_file}}"
)


class ScriptedExecutor:
    """In-process executor that answers every request through `respond`."""

    def __init__(self, respond: Callable[[ExecutorRequest], ExecutorResult]) -> None:
        self.respond = respond
        self.requests: list[ExecutorRequest] = []
        self._lock = threading.Lock()

    def run(self, request: ExecutorRequest) -> ExecutorResult:
        with self._lock:
            self.requests.append(request)
        return self.respond(request)

    @property
    def dispatched_jobs(self) -> list[str]:
        return [request.job_id for request in self.requests]


@pytest.fixture()
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        working_dir=tmp_path,
        store_dir=tmp_path / "prd-json",
        state_dir=tmp_path / ".storyloop",
        loop=LoopSettings(max_iterations=10, gap_seconds=0.0),
        retry=RetrySettings(cooldown_seconds=0.0, no_response_cooldown_seconds=0.0),
    )


@pytest.fixture()
def make_job() -> Callable[..., Job]:
    """Build a job; one default criterion unless `criteria` is given."""

    def _make(job_id: str, criteria: Iterable[str] | None = None, **fields: object) -> Job:
        texts = list(criteria) if criteria is not None else [f"{job_id} works"]
        checked = bool(fields.get("passes", False))
        return Job(
            id=job_id,
            title=f"Story {job_id}",
            acceptance_criteria=[Criterion(text=text, checked=checked) for text in texts],
            **fields,
        )

    return _make


@pytest.fixture()
def make_store(engine_config: EngineConfig) -> Callable[..., JobStore]:
    """Write a fresh store; ids in `blocked` are moved out of pending."""

    def _make(jobs: Iterable[Job], *, blocked: Iterable[str] = ()) -> JobStore:
        store = JobStore.initialize(engine_config.store_dir, jobs)
        for job_id in blocked:
            job = store.get(job_id)
            store.demote(job_id, None if job.blocked_by else BlockReason.decision("needs input"))
        return store

    return _make


@pytest.fixture()
def scripted_executor() -> Callable[..., ScriptedExecutor]:
    return ScriptedExecutor


@pytest.fixture()
def echo_agent_command() -> str:
    """Command template that runs the bundled echo agent."""

    return ECHO_AGENT_COMMAND_TEMPLATE
