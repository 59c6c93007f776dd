"""Controllers for storyloop CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path

from storyloop.config import EngineConfig
from storyloop.engine.backend import CliExecutor
from storyloop.engine.controls import ControlFiles
from storyloop.engine.errors import StoreError
from storyloop.engine.incidents import IncidentLog, summarize_crash
from storyloop.engine.merger import UpdateMerger
from storyloop.engine.models import EngineExit, QueueSnapshot
from storyloop.engine.registry import OrphanProcess, ProcessRegistry
from storyloop.engine.resolver import resolve_dependencies
from storyloop.engine.scheduler import Scheduler
from storyloop.engine.status import read_status
from storyloop.engine.store import JobStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCommand:
    """CLI input for the execution loop."""

    working_dir: Path | None
    config_file: Path | None = None
    max_iterations: int | None = None
    model_strategy: str | None = None
    kill_orphans: bool | None = None
    watch: bool = False


@dataclass(slots=True)
class RunResult:
    """Engine report to render in CLI, plus the process exit code."""

    lines: list[str]
    exit_code: EngineExit


@dataclass(slots=True)
class StatusCommand:
    """CLI input for queue status."""

    working_dir: Path | None


@dataclass(slots=True)
class MergeCommand:
    """CLI input for a manual inbox merge."""

    working_dir: Path | None


@dataclass(slots=True)
class UnblockCommand:
    """CLI input for moving blocked jobs back to pending."""

    working_dir: Path | None
    job_ids: tuple[str, ...]


@dataclass(slots=True)
class OrphansCommand:
    """CLI input for orphan process inspection."""

    working_dir: Path | None
    kill: bool


@dataclass(slots=True)
class LogsCommand:
    """CLI input for crash log listing."""

    working_dir: Path | None
    limit: int


@dataclass(slots=True)
class ControlCommand:
    """CLI input for stop/pause/resume/skip requests."""

    working_dir: Path | None


class StoryloopCliController:
    """Coordinates engine runs, queue inspection and control requests."""

    def run(self, command: RunCommand) -> RunResult:
        config = _load_config(
            command.working_dir,
            config_file=command.config_file,
            max_iterations=command.max_iterations,
            model_strategy=command.model_strategy,
        )
        config.validate()
        incidents = _incidents(config)
        lines: list[str] = []

        crash = incidents.recent_crash()
        if crash is not None:
            logger.warning("Previous run crashed at %s; see %s", crash.occurred_at, crash.path)
            lines.append(
                f"Recent crash {crash.occurred_at}: story={crash.job_id or 'unknown'} "
                f"error={crash.error or '-'} ({crash.path})",
            )

        registry = ProcessRegistry(config.sessions_file)
        kill = config.auto_kill_orphans if command.kill_orphans is None else command.kill_orphans
        lines.extend(_handle_orphans(registry, registry.find_orphans(), kill=kill))

        try:
            store = JobStore.open(config.store_dir)
        except StoreError as error:
            incidents.write_crash(
                iteration=None,
                job=None,
                error=f"{type(error).__name__}: {error}",
            )
            raise

        scheduler = Scheduler(
            config,
            store=store,
            executor=CliExecutor(
                command_template=config.executor.command_template,
                working_dir=config.working_dir,
                registry=registry,
            ),
            registry=registry,
            incidents=incidents,
            observer_callback=_ProgressLogger() if command.watch else None,
        )
        exit_code = scheduler.run()

        lines.append(
            f"Engine finished: {exit_code.name} (exit {int(exit_code)}) "
            f"after {scheduler.iteration} iterations",
        )
        lines.extend(_snapshot_lines(store.snapshot()))
        if scheduler.false_completions:
            lines.append(f"Ignored false completion signals: {len(scheduler.false_completions)}")
        return RunResult(lines=lines, exit_code=exit_code)

    def status(self, command: StatusCommand) -> list[str]:
        config = _load_config(command.working_dir)
        store = JobStore.open(config.store_dir)
        lines = _snapshot_lines(store.snapshot())
        for job_id in store.blocked_ids:
            job = store.get(job_id)
            details: list[str] = []
            if job.blocked_by:
                details.append(f"waiting on {', '.join(job.blocked_by)}")
            if job.block_reason is not None:
                details.append(f"{job.block_reason.kind.value}: {job.block_reason.detail}")
            lines.append(f"  blocked {job_id}: {'; '.join(details) or '-'}")

        status = read_status(config.status_file)
        if status is not None:
            lines.append(
                f"Engine: state={status.get('state')} iteration={status.get('iteration')} "
                f"job={status.get('jobId') or '-'} last_activity={status.get('lastActivity')}",
            )
        controls = ControlFiles(config.control_dir)
        if controls.paused():
            lines.append("Paused: run `storyloop resume` to continue")
        if store.inbox_path.exists():
            lines.append(f"Update inbox waiting to be merged: {store.inbox_path}")
        return lines

    def merge(self, command: MergeCommand) -> list[str]:
        """Merge the update inbox now instead of at the next iteration."""

        config = _load_config(command.working_dir)
        store = JobStore.open(config.store_dir)
        report = UpdateMerger(store=store, dead_letter_dir=config.dead_letter_dir).merge()
        resolution = resolve_dependencies(store)
        if not report.applied:
            lines = [f"No update inbox at {store.inbox_path}"]
        else:
            lines = [f"Merged update inbox: {report.describe()}"]
        if resolution.promoted:
            lines.append(f"Unblocked: {', '.join(resolution.promoted)}")
        if resolution.demoted:
            lines.append(f"Blocked on dependencies: {', '.join(resolution.demoted)}")
        return lines

    def unblock(self, command: UnblockCommand) -> list[str]:
        config = _load_config(command.working_dir)
        store = JobStore.open(config.store_dir)
        lines: list[str] = []
        for job_id in command.job_ids:
            if not store.is_blocked(job_id):
                store.get(job_id)
                lines.append(f"{job_id} is not blocked")
                continue
            store.promote(job_id)
            lines.append(f"{job_id} moved to pending")
        return lines

    def orphans(self, command: OrphansCommand) -> list[str]:
        config = _load_config(command.working_dir)
        registry = ProcessRegistry(config.sessions_file)
        orphans = registry.find_orphans()
        if not orphans:
            pruned = registry.prune()
            return [f"No orphan processes (pruned {pruned} stale entries)"]
        return _handle_orphans(registry, orphans, kill=command.kill)

    def logs(self, command: LogsCommand) -> list[str]:
        config = _load_config(command.working_dir)
        paths = _incidents(config).crash_logs(limit=command.limit)
        if not paths:
            return [f"No crash logs in {config.logs_dir}"]
        lines: list[str] = []
        for path in paths:
            crash = summarize_crash(path)
            lines.append(
                f"{crash.occurred_at} story={crash.job_id or 'unknown'} "
                f"error={crash.error or '-'} {path}",
            )
        return lines

    def stop(self, command: ControlCommand) -> list[str]:
        controls = _controls(command.working_dir)
        controls.request_stop()
        return [f"Stop requested ({controls.stop_path}); the loop exits before the next job"]

    def pause(self, command: ControlCommand) -> list[str]:
        controls = _controls(command.working_dir)
        controls.request_pause()
        return [f"Pause requested ({controls.pause_path})"]

    def resume(self, command: ControlCommand) -> list[str]:
        if _controls(command.working_dir).resume():
            return ["Resumed"]
        return ["Not paused"]

    def skip(self, command: ControlCommand) -> list[str]:
        controls = _controls(command.working_dir)
        controls.request_skip()
        return [f"Skip requested ({controls.skip_path}); the current head job moves to the end"]


class _ProgressLogger:
    """Observer callback that logs queue progress when it changes."""

    def __init__(self) -> None:
        self._last: QueueSnapshot | None = None

    def __call__(self, snapshot: QueueSnapshot) -> None:
        if snapshot == self._last:
            return
        self._last = snapshot
        logger.info(
            "Progress: %d/%d jobs complete, %d pending, %d blocked, criteria %d/%d",
            snapshot.completed,
            snapshot.total,
            snapshot.pending,
            snapshot.blocked,
            snapshot.criteria_checked,
            snapshot.criteria_total,
        )


def _load_config(
    working_dir: Path | None,
    *,
    config_file: Path | None = None,
    max_iterations: int | None = None,
    model_strategy: str | None = None,
) -> EngineConfig:
    config = EngineConfig.from_env(working_dir=working_dir, config_file=config_file)
    if max_iterations is not None:
        config = replace(config, loop=replace(config.loop, max_iterations=max_iterations))
    if model_strategy is not None:
        config = replace(
            config,
            routing=replace(config.routing, strategy=model_strategy.strip().lower()),
        )
    return config


def _incidents(config: EngineConfig) -> IncidentLog:
    return IncidentLog(
        logs_dir=config.logs_dir,
        progress_file=config.progress_file,
        working_dir=config.working_dir,
    )


def _controls(working_dir: Path | None) -> ControlFiles:
    return ControlFiles(_load_config(working_dir).control_dir)


def _handle_orphans(
    registry: ProcessRegistry,
    orphans: list[OrphanProcess],
    *,
    kill: bool,
) -> list[str]:
    if not orphans:
        return []
    lines = [
        f"Orphan {orphan.kind} process {orphan.pid} (parent {orphan.parent_pid} gone): "
        f"{orphan.command or '-'}"
        for orphan in orphans
    ]
    if kill:
        killed = registry.kill_orphans(orphans)
        lines.append(f"Killed orphan processes: {', '.join(str(pid) for pid in killed) or '-'}")
    else:
        lines.append("Run `storyloop orphans --kill` to terminate them")
    return lines


def _snapshot_lines(snapshot: QueueSnapshot) -> list[str]:
    return [
        f"Jobs: {snapshot.completed}/{snapshot.total} complete, "
        f"{snapshot.pending} pending, {snapshot.blocked} blocked",
        f"Criteria: {snapshot.criteria_checked}/{snapshot.criteria_total} checked",
        f"Next job: {snapshot.next_job or '-'}",
    ]
