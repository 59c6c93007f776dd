"""Subprocess-based executor for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import IO

from storyloop.engine.backend.base import ExecutorRequest, ExecutorResult
from storyloop.engine.errors import ExecutorLaunchError
from storyloop.engine.registry import ProcessRegistry

logger = logging.getLogger(__name__)

CANCELLED_EXIT_CODE = 130


class CliExecutor:
    """Render the command template and run it, capturing output to files."""

    def __init__(
        self,
        *,
        command_template: str,
        working_dir: Path | None = None,
        registry: ProcessRegistry | None = None,
    ) -> None:
        self.command_template = command_template
        self.working_dir = working_dir
        self.registry = registry

    def run(self, request: ExecutorRequest) -> ExecutorResult:
        request.run_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = request.run_dir / f"{request.label}-prompt.txt"
        stdout_path = request.run_dir / f"{request.label}-stdout.log"
        stderr_path = request.run_dir / f"{request.label}-stderr.log"
        prompt_file.write_text(request.instructions, "utf-8")

        run_args = build_run_args(
            command_template=self.command_template,
            model=request.model,
            prompt=request.instructions,
            prompt_file=prompt_file,
            job_id=request.job_id,
            session_id=request.session_id,
        )

        env = os.environ.copy()
        env["STORYLOOP_JOB_ID"] = request.job_id
        env["STORYLOOP_SESSION_ID"] = request.session_id
        env["STORYLOOP_MODEL"] = request.model
        env["STORYLOOP_AGENT_LABEL"] = request.label

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, pid = self._run_subprocess(
                    run_args=run_args,
                    env=env,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    request=request,
                )
        except FileNotFoundError as error:
            raise ExecutorLaunchError(
                f"Executor command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise ExecutorLaunchError(
                f"Executor failed to start: {error}",
                transient=True,
            ) from error

        return ExecutorResult(
            exit_code=exit_code,
            stdout=_read_text(stdout_path),
            stderr=_read_text(stderr_path),
            pid=pid,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )

    def _run_subprocess(
        self,
        *,
        run_args: list[str],
        env: dict[str, str],
        stdout_handle: IO[str],
        stderr_handle: IO[str],
        request: ExecutorRequest,
    ) -> tuple[int, int]:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            cwd=self.working_dir,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        if self.registry is not None:
            self.registry.track(process.pid, kind=f"executor-{request.label}")
        logger.debug(
            "Started executor pid=%d for %s (%s)",
            process.pid,
            request.job_id,
            request.label,
        )
        try:
            return _wait_with_shutdown(process, request), process.pid
        finally:
            if self.registry is not None:
                self.registry.untrack(process.pid)


def build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    job_id: str,
    session_id: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutorLaunchError("Executor command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ExecutorLaunchError(
            "Executor command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            job_id=shlex.quote(job_id),
            session_id=shlex.quote(session_id),
        )
    except (KeyError, IndexError, ValueError) as error:
        raise ExecutorLaunchError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorLaunchError(
            "Executor command template rendered empty command.",
            transient=False,
        )
    return argv


def _wait_with_shutdown(process: subprocess.Popen[str], request: ExecutorRequest) -> int:
    shutdown_deadline: float | None = None
    graceful_seconds = max(0.0, request.graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode

        if request.shutdown_requested is not None and request.shutdown_requested():
            now = time.monotonic()
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return CANCELLED_EXIT_CODE

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
