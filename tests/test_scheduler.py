from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import allure
import pytest

from storyloop.config import EngineConfig
from storyloop.engine.backend.base import ExecutorRequest, ExecutorResult
from storyloop.engine.classifier import COMPLETE_SENTINEL
from storyloop.engine.controls import ControlFiles
from storyloop.engine.errors import ExecutorLaunchError
from storyloop.engine.models import BlockKind, EngineExit, OutcomeClass
from storyloop.engine.scheduler import Scheduler
from storyloop.engine.status import read_status
from storyloop.engine.store import JobStore

pytestmark = [
    allure.epic("Story Engine"),
    allure.feature("Scheduler"),
]


def _envelope(checked: list[int], *, tail: str = "", **fields: object) -> str:
    payload = json.dumps({"checked": checked, **fields})
    return f"implemented the story\n<result>{payload}</result>\n{tail}".rstrip()


def _check_all(request: ExecutorRequest) -> ExecutorResult:
    return ExecutorResult(exit_code=0, stdout=_envelope([0]))


def _scheduler(config: EngineConfig, store: JobStore, executor) -> Scheduler:
    return Scheduler(config, store=store, executor=executor, sleep=lambda _: None)


def _with(config: EngineConfig, **sections: dict) -> EngineConfig:
    changes = {
        name: dataclasses.replace(getattr(config, name), **values)
        for name, values in sections.items()
    }
    return dataclasses.replace(config, **changes)


def test_empty_store_completes_without_dispatch(
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([])
    executor = scripted_executor(_check_all)

    assert _scheduler(engine_config, store, executor).run() == EngineExit.COMPLETE
    assert executor.requests == []
    status = read_status(engine_config.status_file)
    assert status is not None
    assert status["state"] == "complete"


def test_only_blocked_jobs_exit_blocked(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001")], blocked=["US-001"])
    executor = scripted_executor(_check_all)

    assert _scheduler(engine_config, store, executor).run() == EngineExit.BLOCKED
    assert executor.requests == []


def test_jobs_run_in_order_until_complete(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001"), make_job("US-002")])
    executor = scripted_executor(_check_all)
    scheduler = _scheduler(engine_config, store, executor)

    assert scheduler.run() == EngineExit.COMPLETE
    assert executor.dispatched_jobs == ["US-001", "US-002"]
    assert scheduler.iteration == 2
    reopened = JobStore.open(engine_config.store_dir)
    assert all(job.passes for job in reopened.jobs())
    assert reopened.get("US-001").completed_by == "storyloop"
    assert executor.requests[0].model == "sonnet"
    assert "0. [ ] US-001 works" in executor.requests[0].instructions


def test_completion_claim_is_ignored_while_work_remains(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001", ["a", "b"])])
    executor = scripted_executor(
        lambda request: ExecutorResult(exit_code=0, stdout=f"all done!\n{COMPLETE_SENTINEL}"),
    )
    config = _with(engine_config, loop={"max_iterations": 2})
    scheduler = _scheduler(config, store, executor)

    assert scheduler.run() == EngineExit.MAX_ITERATIONS
    assert len(executor.requests) == 2
    assert [signal.job_id for signal in scheduler.false_completions] == ["US-001", "US-001"]
    assert scheduler.false_completions[0].claimed == OutcomeClass.SIGNAL_COMPLETE
    assert scheduler.false_completions[0].pending_count == 1
    assert JobStore.open(engine_config.store_dir).get("US-001").passes is False


def test_confirmed_completion_signal_ends_the_loop(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001")])
    executor = scripted_executor(
        lambda request: ExecutorResult(
            exit_code=0,
            stdout=_envelope([0], tail=COMPLETE_SENTINEL),
        ),
    )
    scheduler = _scheduler(engine_config, store, executor)

    assert scheduler.run() == EngineExit.COMPLETE
    assert scheduler.iteration == 1
    assert scheduler.false_completions == []


def test_no_response_exhaustion_leaves_job_untouched(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001")])
    job_file = store.job_path("US-001")
    before = job_file.read_bytes()
    executor = scripted_executor(
        lambda request: ExecutorResult(exit_code=1, stdout="Error: No messages returned"),
    )
    config = _with(engine_config, loop={"max_iterations": 1})

    assert _scheduler(config, store, executor).run() == EngineExit.MAX_ITERATIONS
    assert len(executor.requests) == 3
    assert len({request.session_id for request in executor.requests}) == 3
    assert job_file.read_bytes() == before
    assert store.index.pending == ["US-001"]
    assert len(list(config.logs_dir.glob("retry-exhausted-*.log"))) == 1
    assert len(list(config.logs_dir.glob("incident-*.log"))) == 3
    assert "## Retry exhausted for US-001" in config.progress_file.read_text("utf-8")


def test_exhaustion_can_block_the_job(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001")])
    executor = scripted_executor(
        lambda request: ExecutorResult(exit_code=1, stdout="", stderr="Error: 502 Bad Gateway"),
    )
    config = _with(engine_config, retry={"max_retries": 2, "block_on_exhaustion": True})

    assert _scheduler(config, store, executor).run() == EngineExit.BLOCKED
    assert len(executor.requests) == 2
    reason = JobStore.open(config.store_dir).get("US-001").block_reason
    assert reason is not None
    assert reason.kind == BlockKind.INFRA


def test_transient_launch_error_is_retried(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    calls: list[str] = []

    def _respond(request: ExecutorRequest) -> ExecutorResult:
        calls.append(request.session_id)
        if len(calls) == 1:
            raise ExecutorLaunchError("too many open files", transient=True)
        return _check_all(request)

    store = make_store([make_job("US-001")])

    assert _scheduler(engine_config, store, scripted_executor(_respond)).run() == (
        EngineExit.COMPLETE
    )
    assert len(calls) == 2


def test_completed_blocker_releases_dependent_job(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store(
        [make_job("US-001"), make_job("US-002", blocked_by=["US-001"])],
        blocked=["US-002"],
    )
    executor = scripted_executor(_check_all)

    assert _scheduler(engine_config, store, executor).run() == EngineExit.COMPLETE
    assert executor.dispatched_jobs == ["US-001", "US-002"]


def test_cancelled_executor_leaves_store_untouched(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001")])
    job_bytes = store.job_path("US-001").read_bytes()
    index_bytes = store.index_path.read_bytes()
    executor = scripted_executor(
        lambda request: ExecutorResult(exit_code=130, stdout=_envelope([0], done=True)),
    )

    assert _scheduler(engine_config, store, executor).run() == EngineExit.USER_CANCELLED
    assert len(executor.requests) == 1
    assert store.job_path("US-001").read_bytes() == job_bytes
    assert store.index_path.read_bytes() == index_bytes
    status = read_status(engine_config.status_file)
    assert status is not None
    assert status["state"] == "user_cancelled"


def test_stop_request_is_honoured_between_iterations(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    controls = ControlFiles(engine_config.control_dir)
    controls.request_stop()
    store = make_store([make_job("US-001"), make_job("US-002")])

    def _respond(request: ExecutorRequest) -> ExecutorResult:
        controls.request_stop()
        return _check_all(request)

    executor = scripted_executor(_respond)

    assert _scheduler(engine_config, store, executor).run() == EngineExit.USER_CANCELLED
    assert executor.dispatched_jobs == ["US-001"]
    reopened = JobStore.open(engine_config.store_dir)
    assert reopened.get("US-001").passes is True
    assert reopened.index.pending == ["US-002"]
    assert not controls.stop_requested()


def test_skip_defers_the_head_job(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    controls = ControlFiles(engine_config.control_dir)
    store = make_store([make_job("US-001"), make_job("US-002"), make_job("US-003")])

    def _respond(request: ExecutorRequest) -> ExecutorResult:
        if not controls.skip_path.exists() and len(executor.requests) == 1:
            controls.request_skip()
            return ExecutorResult(exit_code=0, stdout="still exploring the codebase")
        return _check_all(request)

    executor = scripted_executor(_respond)

    assert _scheduler(engine_config, store, executor).run() == EngineExit.COMPLETE
    assert executor.dispatched_jobs == ["US-001", "US-002", "US-003", "US-001"]


def test_blocked_report_moves_job_to_blocked(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001", ["a", "b"])])
    executor = scripted_executor(
        lambda request: ExecutorResult(
            exit_code=0,
            stdout=_envelope(
                [0],
                blocked={"kind": "decision", "detail": "which payment provider?"},
            ),
        ),
    )

    assert _scheduler(engine_config, store, executor).run() == EngineExit.BLOCKED
    job = JobStore.open(engine_config.store_dir).get("US-001")
    assert job.acceptance_criteria[0].checked is True
    assert job.block_reason is not None
    assert job.block_reason.kind == BlockKind.DECISION
    assert job.block_reason.detail == "which payment provider?"


def test_inbox_written_during_a_run_is_merged(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001")])

    def _respond(request: ExecutorRequest) -> ExecutorResult:
        if request.job_id == "US-001":
            store.inbox_path.write_text(
                json.dumps({"newJobs": [{"id": "BUG-002", "acceptanceCriteria": ["fixed"]}]}),
                "utf-8",
            )
        return _check_all(request)

    executor = scripted_executor(_respond)

    assert _scheduler(engine_config, store, executor).run() == EngineExit.COMPLETE
    assert executor.dispatched_jobs == ["US-001", "BUG-002"]
    assert not store.inbox_path.exists()
    assert JobStore.open(engine_config.store_dir).index.story_order == ["US-001", "BUG-002"]


def test_verification_job_passes_when_all_agents_pass(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("V-001", ["desktop ok", "mobile ok"])])
    executor = scripted_executor(
        lambda request: ExecutorResult(exit_code=0, stdout=f"verified\n{COMPLETE_SENTINEL}"),
    )

    assert _scheduler(engine_config, store, executor).run() == EngineExit.COMPLETE
    assert sorted(request.label for request in executor.requests) == [
        "verify-accessibility",
        "verify-desktop",
        "verify-mobile",
    ]
    assert {request.model for request in executor.requests} == {"haiku"}
    job = JobStore.open(engine_config.store_dir).get("V-001")
    assert job.passes is True
    assert job.all_checked


def test_failed_verification_keeps_job_pending(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("V-001")])

    def _respond(request: ExecutorRequest) -> ExecutorResult:
        if request.label == "verify-accessibility":
            return ExecutorResult(exit_code=0, stdout="BLOCKED: missing aria labels")
        return ExecutorResult(exit_code=0, stdout=COMPLETE_SENTINEL)

    executor = scripted_executor(_respond)
    config = _with(engine_config, loop={"max_iterations": 1})

    assert _scheduler(config, store, executor).run() == EngineExit.MAX_ITERATIONS
    assert len(executor.requests) == 3
    assert JobStore.open(config.store_dir).get("V-001").passes is False
    progress = config.progress_file.read_text("utf-8")
    assert "- verify-accessibility: FAIL (BLOCKED: missing aria labels)" in progress
    assert "Overall: FAIL" in progress


def test_fatal_launch_error_writes_crash_log(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001")])

    def _respond(request: ExecutorRequest) -> ExecutorResult:
        raise ExecutorLaunchError("executor binary not found: claude", transient=False)

    with pytest.raises(ExecutorLaunchError):
        _scheduler(engine_config, store, scripted_executor(_respond)).run()

    crash_logs = list(engine_config.logs_dir.glob("crash-*.log"))
    assert len(crash_logs) == 1
    text = crash_logs[0].read_text("utf-8")
    assert "Story: US-001" in text
    assert "ExecutorLaunchError: executor binary not found: claude" in text
    status = read_status(engine_config.status_file)
    assert status is not None
    assert status["state"] == "crashed"


def test_malformed_inbox_does_not_stop_the_loop(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001")])
    store.inbox_path.write_text("{oops", "utf-8")
    executor = scripted_executor(_check_all)

    assert _scheduler(engine_config, store, executor).run() == EngineExit.COMPLETE
    assert list(engine_config.dead_letter_dir.glob("update-*.json"))


def test_run_directory_is_scoped_by_job_and_session(
    make_job,
    make_store,
    scripted_executor,
    engine_config,
) -> None:
    store = make_store([make_job("US-001")])
    executor = scripted_executor(_check_all)
    scheduler = Scheduler(
        engine_config,
        store=store,
        executor=executor,
        sleep=lambda _: None,
        new_session_id=lambda: "fixed-session",
    )

    scheduler.run()

    request = executor.requests[0]
    assert request.session_id == "fixed-session"
    assert request.run_dir == Path(engine_config.runs_dir, "US-001", "fixed-session")
