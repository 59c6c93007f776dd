"""Scheduler main loop: merge, unblock, select, dispatch, classify, advance."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from storyloop.config import EngineConfig
from storyloop.engine.backend.base import Executor, ExecutorRequest, ExecutorResult
from storyloop.engine.classifier import (
    Classification,
    OutcomeClassifier,
    ResultEnvelope,
    build_classifier,
)
from storyloop.engine.controls import ControlFiles
from storyloop.engine.errors import EngineError, ExecutorLaunchError, MergeFailure
from storyloop.engine.incidents import IncidentLog
from storyloop.engine.merger import UpdateMerger
from storyloop.engine.models import (
    BlockReason,
    EngineExit,
    FalseCompletionSignal,
    Job,
    OutcomeClass,
    QueueSnapshot,
)
from storyloop.engine.observer import QueueObserver
from storyloop.engine.prompts import build_instructions
from storyloop.engine.registry import ProcessRegistry
from storyloop.engine.resolver import resolve_dependencies
from storyloop.engine.retry import (
    AttemptResult,
    DispatchOutcome,
    RetryBudget,
    RetryPolicy,
)
from storyloop.engine.routing import resolve_model
from storyloop.engine.status import StatusFile
from storyloop.engine.store import JobStore
from storyloop.engine.verification import ParallelVerificationDispatcher, VerificationResult

logger = logging.getLogger(__name__)

_TERMINAL_SIGNALS = (OutcomeClass.SIGNAL_COMPLETE, OutcomeClass.SIGNAL_ALL_BLOCKED)


class Scheduler:
    """Single-threaded loop that dispatches the head of `pending` one job at a time.

    Only the scheduler mutates the store. Each iteration merges the update
    inbox, completes satisfied jobs, resolves dependencies and then selects
    the next job. Terminal executor signals are checked against a fresh read
    of the store before the loop acts on them.
    """

    def __init__(  # noqa: PLR0913
        self,
        config: EngineConfig,
        *,
        store: JobStore,
        executor: Executor,
        classifier: OutcomeClassifier | None = None,
        registry: ProcessRegistry | None = None,
        incidents: IncidentLog | None = None,
        controls: ControlFiles | None = None,
        status: StatusFile | None = None,
        sleep: Callable[[float], None] | None = None,
        observer_callback: Callable[[QueueSnapshot], None] | None = None,
        new_session_id: Callable[[], str] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.executor = executor
        self.classifier = classifier or build_classifier(config.classifier)
        self.registry = registry
        self.incidents = incidents or IncidentLog(
            logs_dir=config.logs_dir,
            progress_file=config.progress_file,
            working_dir=config.working_dir,
        )
        self.controls = controls or ControlFiles(config.control_dir)
        self.status = status or StatusFile(config.status_file)
        self.observer_callback = observer_callback
        self._sleep = sleep or self._sleep_with_stop
        self.merger = UpdateMerger(store=store, dead_letter_dir=config.dead_letter_dir)
        self.retry_policy = RetryPolicy(
            settings=config.retry,
            incidents=self.incidents,
            sleep=self._sleep,
            should_stop=lambda: self._stop_requested,
            on_retry=self._on_retry,
            new_session_id=new_session_id,
        )
        self.verifier = ParallelVerificationDispatcher(
            executor=executor,
            classifier=self.classifier,
            incidents=self.incidents,
            agents=config.verification.agents,
        )
        self.iteration = 0
        self.false_completions: list[FalseCompletionSignal] = []
        self._stop_requested = False
        self._current_job: Job | None = None
        self._last_output = ""

    def run(self) -> EngineExit:
        """Loop until a terminal state and return the engine exit code."""

        self.controls.clear_stale()
        self.status.start()
        observer = self._start_observer()
        try:
            with self._signal_handlers():
                exit_code = self._run_guarded()
        finally:
            if observer is not None:
                observer.stop()
            if self.registry is not None:
                self.registry.untrack_session()

        self.status.update(exit_code.name.lower(), iteration=self.iteration, jobId=None)
        logger.info(
            "Engine finished after %d iterations: %s (exit %d)",
            self.iteration,
            exit_code.name,
            int(exit_code),
        )
        return exit_code

    def _run_guarded(self) -> EngineExit:
        try:
            return self._loop()
        except EngineError as error:
            crash_log = self.incidents.write_crash(
                iteration=self.iteration,
                job=self._current_job,
                error=f"{type(error).__name__}: {error}",
                output=self._last_output,
            )
            self.status.update("crashed", error=str(error))
            logger.error("Engine stopped: %s (crash log: %s)", error, crash_log)
            raise

    def _loop(self) -> EngineExit:
        while True:
            if self._cancel_requested():
                return EngineExit.USER_CANCELLED
            if self.controls.paused():
                self.status.update("paused")
                self.controls.wait_while_paused(
                    sleep=self._sleep,
                    should_abort=lambda: self._stop_requested,
                )
                if self._cancel_requested():
                    return EngineExit.USER_CANCELLED

            self._refresh_queue()
            if self.controls.consume_skip():
                self._skip_head()

            job_id = self.store.next_pending()
            if job_id is None:
                if self.store.blocked_ids:
                    logger.warning(
                        "No pending jobs; blocked: %s",
                        ", ".join(self.store.blocked_ids),
                    )
                    return EngineExit.BLOCKED
                logger.info("All jobs complete")
                return EngineExit.COMPLETE
            if self.iteration >= self.config.loop.max_iterations:
                logger.warning(
                    "Reached max iterations (%d); %d jobs still pending",
                    self.config.loop.max_iterations,
                    self.store.pending_count,
                )
                return EngineExit.MAX_ITERATIONS

            self.iteration += 1
            terminal = self._run_iteration(self.store.get(job_id))
            if terminal is not None:
                return terminal
            if self._stop_requested:
                return EngineExit.USER_CANCELLED
            self._sleep(self.config.loop.gap_seconds)

    def _run_iteration(self, job: Job) -> EngineExit | None:
        self._current_job = job
        resolved = resolve_model(job, self.config.routing)
        instructions = build_instructions(
            job,
            model=resolved.model,
            store_dir=self.config.store_dir,
            working_dir=self.config.working_dir,
            template_path=self.config.executor.prompt_file,
        )
        verify = self._needs_verification(job)
        logger.info(
            "Iteration %d/%d: %s with %s (%s)%s",
            self.iteration,
            self.config.loop.max_iterations,
            job.id,
            resolved.model,
            resolved.resolved_by,
            " [parallel verification]" if verify else "",
        )
        self.status.update(
            "running",
            iteration=self.iteration,
            jobId=job.id,
            model=resolved.model,
            error=None,
        )

        def attempt(session_id: str) -> AttemptResult:
            run_dir = self.config.runs_dir / job.id / session_id
            if verify:
                return self._verify(job, resolved.model, instructions, session_id, run_dir)
            return self._execute(job, resolved.model, instructions, session_id, run_dir)

        dispatch = self.retry_policy.run(attempt, job_id=job.id)
        self._last_output = dispatch.attempt.output
        classification = dispatch.classification
        logger.info(
            "Iteration %d result for %s: %s (%s); retry budget: %s",
            self.iteration,
            job.id,
            classification.outcome.value,
            classification.reason_code,
            dispatch.tracker.describe(),
        )

        if classification.outcome == OutcomeClass.USER_CANCELLED or dispatch.interrupted:
            logger.warning("Cancelled while running %s; store left untouched", job.id)
            return EngineExit.USER_CANCELLED
        if dispatch.exhausted is not None:
            self._handle_exhaustion(job, dispatch, dispatch.exhausted)
            return None

        if isinstance(dispatch.attempt.payload, VerificationResult):
            self._apply_verification(job, dispatch.attempt.payload)
        else:
            self._apply_envelope(job, classification.envelope)
        self._refresh_queue()
        self._current_job = None

        if classification.outcome in _TERMINAL_SIGNALS:
            return self._confirm_signal(job, classification.outcome)
        return None

    def _execute(  # noqa: PLR0913
        self,
        job: Job,
        model: str,
        instructions: str,
        session_id: str,
        run_dir: Path,
    ) -> AttemptResult:
        request = ExecutorRequest(
            job_id=job.id,
            model=model,
            instructions=instructions,
            session_id=session_id,
            run_dir=run_dir,
            shutdown_requested=lambda: self._stop_requested,
        )
        try:
            executed: ExecutorResult = self.executor.run(request)
        except ExecutorLaunchError as error:
            if not error.transient:
                raise
            return AttemptResult(
                classification=Classification(
                    outcome=OutcomeClass.TRANSIENT_INFRA,
                    reason_code="executor_launch_error",
                    matched_rule="launch_error",
                ),
                output=str(error),
            )
        classification = self.classifier.classify(
            exit_code=executed.exit_code,
            stdout=executed.stdout,
            stderr=executed.stderr,
        )
        return AttemptResult(
            classification=classification,
            output=executed.stdout,
            payload=executed,
        )

    def _verify(  # noqa: PLR0913
        self,
        job: Job,
        model: str,
        instructions: str,
        session_id: str,
        run_dir: Path,
    ) -> AttemptResult:
        result = self.verifier.dispatch(
            job=job,
            model=model,
            instructions=instructions,
            session_id=session_id,
            run_dir=run_dir,
            shutdown_requested=lambda: self._stop_requested,
        )
        return AttemptResult(
            classification=result.to_classification(),
            output=result.combined_output(),
            payload=result,
        )

    def _apply_envelope(self, job: Job, envelope: ResultEnvelope | None) -> None:
        if envelope is None:
            return
        for index in envelope.checked:
            if 0 <= index < len(job.acceptance_criteria):
                self.store.mark_criterion(job.id, index)
            else:
                logger.warning("Ignoring unknown criterion #%d reported for %s", index, job.id)

        if envelope.blocked is not None or envelope.blocked_by:
            blockers = [
                blocker
                for blocker in envelope.blocked_by
                if blocker != job.id and blocker in self.store
            ]
            ignored = sorted(set(envelope.blocked_by) - set(blockers))
            if ignored:
                logger.warning("Ignoring unknown blockers for %s: %s", job.id, ", ".join(ignored))
            reason = envelope.blocked or BlockReason.external(
                f"waiting on {', '.join(blockers)}" if blockers else "reported blocked",
            )
            self.store.mark_blocked(job.id, reason, blocked_by=blockers)
            return

        if envelope.done and not job.acceptance_criteria:
            self.store.mark_complete(job.id, completed_by=self.config.executor.agent_name)
        elif envelope.done and not job.all_checked:
            logger.warning("%s reported done with unchecked criteria; keeping it pending", job.id)

    def _apply_verification(self, job: Job, result: VerificationResult) -> None:
        if not result.passed:
            logger.warning(
                "%s stays pending after failed verification: %s",
                job.id,
                "; ".join(result.failure_reasons),
            )
            return
        for index, criterion in enumerate(job.acceptance_criteria):
            if not criterion.checked:
                self.store.mark_criterion(job.id, index)
        self.store.mark_complete(job.id, completed_by=self.config.executor.agent_name)

    def _handle_exhaustion(
        self,
        job: Job,
        dispatch: DispatchOutcome,
        budget: RetryBudget,
    ) -> None:
        blocked = False
        if self.config.retry.block_on_exhaustion:
            self.store.mark_blocked(
                job.id,
                BlockReason.infra(
                    f"{budget.outcome.value} retry budget exhausted after {budget.used} attempts",
                ),
            )
            blocked = True
        path = self.incidents.write_exhaustion(
            job_id=job.id,
            outcome=budget.outcome,
            attempts=budget.used,
            last_incident=dispatch.last_incident,
            job_blocked=blocked,
        )
        self.status.update("error", error=f"{budget.outcome.value} retries exhausted")
        logger.error(
            "Giving up on %s this iteration after %d %s failures; incident: %s",
            job.id,
            budget.used,
            budget.outcome.value,
            path,
        )
        self._current_job = None

    def _confirm_signal(self, job: Job, claimed: OutcomeClass) -> EngineExit | None:
        ground_truth = JobStore.open(self.store.root).snapshot()
        if ground_truth.pending == 0:
            if ground_truth.blocked:
                logger.warning(
                    "%s signalled %s; no pending jobs but %d blocked",
                    job.id,
                    claimed.value,
                    ground_truth.blocked,
                )
                return EngineExit.BLOCKED
            logger.info("%s signalled %s; store confirms all jobs complete", job.id, claimed.value)
            return EngineExit.COMPLETE

        signal_record = FalseCompletionSignal(
            job_id=job.id,
            claimed=claimed,
            pending_count=ground_truth.pending,
            blocked_count=ground_truth.blocked,
        )
        self.false_completions.append(signal_record)
        logger.warning(
            "Ignoring %s from %s: store still has %d pending and %d blocked jobs",
            claimed.value,
            job.id,
            ground_truth.pending,
            ground_truth.blocked,
        )
        return None

    def _refresh_queue(self) -> None:
        try:
            self.merger.merge()
        except MergeFailure as error:
            logger.error("Update inbox not merged: %s", error)
        completed = self.store.complete_satisfied(completed_by=self.config.executor.agent_name)
        if completed:
            logger.info("Completed jobs with all criteria checked: %s", ", ".join(completed))
        resolve_dependencies(self.store)

    def _skip_head(self) -> None:
        job_id = self.store.next_pending()
        if job_id is None:
            return
        if self.store.defer(job_id):
            logger.info("Skipped %s; moved to the end of the pending queue", job_id)
        else:
            logger.info("Skip requested but %s is the only pending job", job_id)

    def _needs_verification(self, job: Job) -> bool:
        settings = self.config.verification
        return settings.enabled and job.prefix in settings.prefixes

    def _cancel_requested(self) -> bool:
        if self._stop_requested:
            return True
        if self.controls.consume_stop():
            logger.info("Stop requested via control file")
            return True
        return False

    def _on_retry(self, budget: RetryBudget, classification: Classification) -> None:
        self.status.update(
            "retry",
            error=classification.outcome.value,
            retryIn=budget.cooldown_seconds,
        )

    def _start_observer(self) -> QueueObserver | None:
        if self.observer_callback is None:
            return None
        observer = QueueObserver(
            store_dir=self.store.root,
            callback=self.observer_callback,
            interval_seconds=self.config.loop.observer_interval_seconds,
        )
        observer.start()
        return observer

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        if not self._stop_requested:
            logger.warning("Received %s; stopping after the current step", signal_name)
        self._stop_requested = True
