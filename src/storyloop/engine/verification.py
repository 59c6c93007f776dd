"""Parallel verification: fan out one verification job, join all, AND the verdicts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path

from storyloop.engine.backend.base import Executor, ExecutorRequest
from storyloop.engine.classifier import (
    Classification,
    OutcomeClassifier,
    extract_failure_reason,
)
from storyloop.engine.errors import ExecutorLaunchError
from storyloop.engine.incidents import IncidentLog
from storyloop.engine.models import Job, OutcomeClass
from storyloop.engine.prompts import VERIFICATION_FOCUSES, with_focus

logger = logging.getLogger(__name__)

# Most severe first; decides the aggregate class of a failed fan-out.
_SEVERITY: tuple[OutcomeClass, ...] = (
    OutcomeClass.USER_CANCELLED,
    OutcomeClass.NO_RESPONSE,
    OutcomeClass.TRANSIENT_INFRA,
)


@dataclass(slots=True)
class AgentVerdict:
    """Outcome of one verification agent."""

    label: str
    session_id: str
    classification: Classification
    reason: str | None
    output: str = ""

    @property
    def passed(self) -> bool:
        return self.classification.outcome == OutcomeClass.SIGNAL_COMPLETE


@dataclass(slots=True)
class VerificationResult:
    """Aggregate of every agent; passes only when all of them pass."""

    job_id: str
    verdicts: list[AgentVerdict]

    @property
    def passed(self) -> bool:
        return bool(self.verdicts) and all(verdict.passed for verdict in self.verdicts)

    @property
    def failure_reasons(self) -> list[str]:
        return [
            f"{verdict.label}: {verdict.reason}"
            for verdict in self.verdicts
            if not verdict.passed
        ]

    def to_classification(self) -> Classification:
        """Single classification the scheduler and retry policy act on."""

        if self.passed:
            return Classification(
                outcome=OutcomeClass.SUCCESS,
                reason_code="verification_passed",
                matched_rule="parallel_verification",
            )
        outcomes = {verdict.classification.outcome for verdict in self.verdicts}
        for outcome in _SEVERITY:
            if outcome in outcomes:
                return Classification(
                    outcome=outcome,
                    reason_code=f"verification_{outcome.value}",
                    matched_rule="parallel_verification",
                )
        return Classification(
            outcome=OutcomeClass.SUCCESS,
            reason_code="verification_failed",
            matched_rule="parallel_verification",
        )

    def combined_output(self) -> str:
        return "\n".join(f"--- {verdict.label} ---\n{verdict.output}" for verdict in self.verdicts)


class ParallelVerificationDispatcher:
    """Run up to three focused executors for the same job concurrently."""

    def __init__(
        self,
        *,
        executor: Executor,
        classifier: OutcomeClassifier,
        incidents: IncidentLog,
        agents: int = len(VERIFICATION_FOCUSES),
    ) -> None:
        self.executor = executor
        self.classifier = classifier
        self.incidents = incidents
        self.agents = max(1, min(agents, len(VERIFICATION_FOCUSES)))

    def dispatch(  # noqa: PLR0913
        self,
        *,
        job: Job,
        model: str,
        instructions: str,
        session_id: str,
        run_dir: Path,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> VerificationResult:
        logger.info("Running parallel verification of %s with %d agents", job.id, self.agents)
        with ThreadPoolExecutor(
            max_workers=self.agents,
            thread_name_prefix="storyloop-verify",
        ) as pool:
            futures = []
            for focus_index in range(self.agents):
                label, focused = with_focus(instructions, focus_index)
                request = ExecutorRequest(
                    job_id=job.id,
                    model=model,
                    instructions=focused,
                    session_id=f"{session_id}-{label}",
                    run_dir=run_dir,
                    label=f"verify-{label}",
                    shutdown_requested=shutdown_requested,
                )
                futures.append(pool.submit(self._run_agent, request))
            wait(futures)

        result = VerificationResult(
            job_id=job.id,
            verdicts=[future.result() for future in futures],
        )
        self._record(result)
        return result

    def _run_agent(self, request: ExecutorRequest) -> AgentVerdict:
        try:
            executed = self.executor.run(request)
        except ExecutorLaunchError as error:
            if not error.transient:
                raise
            return AgentVerdict(
                label=request.label,
                session_id=request.session_id,
                classification=Classification(
                    outcome=OutcomeClass.TRANSIENT_INFRA,
                    reason_code="executor_launch_error",
                    matched_rule="launch_error",
                ),
                reason=f"Error: {error}",
            )
        classification = self.classifier.classify(
            exit_code=executed.exit_code,
            stdout=executed.stdout,
            stderr=executed.stderr,
        )
        passed = classification.outcome == OutcomeClass.SIGNAL_COMPLETE
        return AgentVerdict(
            label=request.label,
            session_id=request.session_id,
            classification=classification,
            reason=None if passed else extract_failure_reason(executed.stdout),
            output=executed.stdout,
        )

    def _record(self, result: VerificationResult) -> None:
        lines = [
            f"- {verdict.label}: "
            + ("PASS" if verdict.passed else f"FAIL ({verdict.reason})")
            for verdict in result.verdicts
        ]
        lines.append(f"Overall: {'PASS' if result.passed else 'FAIL'}")
        self.incidents.append_progress(
            f"### Parallel Verification Results for {result.job_id}",
            lines,
        )
        if result.passed:
            logger.info("Parallel verification of %s passed", result.job_id)
        else:
            logger.warning(
                "Parallel verification of %s failed: %s",
                result.job_id,
                "; ".join(result.failure_reasons),
            )
