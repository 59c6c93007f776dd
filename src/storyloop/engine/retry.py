"""Per-category retry budgets with cooldowns and fresh session ids."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from storyloop.config import RetrySettings
from storyloop.engine.classifier import Classification
from storyloop.engine.incidents import IncidentLog
from storyloop.engine.models import OutcomeClass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AttemptResult:
    """Classification of one dispatch plus the output it was derived from."""

    classification: Classification
    output: str = ""
    payload: object | None = None


AttemptFn = Callable[[str], AttemptResult]


@dataclass(slots=True)
class RetryBudget:
    """Attempt counter for one failure category."""

    outcome: OutcomeClass
    limit: int
    cooldown_seconds: float
    used: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit


@dataclass(slots=True)
class RetryTracker:
    """Independent budgets for transient and no-response failures of one job."""

    budgets: dict[OutcomeClass, RetryBudget]

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryTracker:
        return cls(
            budgets={
                OutcomeClass.TRANSIENT_INFRA: RetryBudget(
                    outcome=OutcomeClass.TRANSIENT_INFRA,
                    limit=settings.max_retries,
                    cooldown_seconds=settings.cooldown_seconds,
                ),
                OutcomeClass.NO_RESPONSE: RetryBudget(
                    outcome=OutcomeClass.NO_RESPONSE,
                    limit=settings.no_response_max_retries,
                    cooldown_seconds=settings.no_response_cooldown_seconds,
                ),
            },
        )

    def record(self, outcome: OutcomeClass) -> RetryBudget:
        budget = self.budgets[outcome]
        budget.used += 1
        return budget

    def attempts(self) -> dict[OutcomeClass, int]:
        return {outcome: budget.used for outcome, budget in self.budgets.items()}

    def describe(self) -> str:
        return ", ".join(
            f"{outcome.value} {budget.remaining}/{budget.limit} left"
            for outcome, budget in self.budgets.items()
        )


@dataclass(slots=True)
class DispatchOutcome:
    """Final result of dispatching one job through the retry policy."""

    attempt: AttemptResult
    tracker: RetryTracker
    session_ids: list[str] = field(default_factory=list)
    exhausted: RetryBudget | None = None
    interrupted: bool = False
    last_incident: Path | None = None

    @property
    def classification(self) -> Classification:
        return self.attempt.classification


class RetryPolicy:
    """Re-dispatch retryable failures until success or budget exhaustion.

    Each retry sleeps the category's cooldown and uses a new session id.
    Exhaustion is reported to the caller; the policy never touches the store.
    """

    def __init__(
        self,
        *,
        settings: RetrySettings,
        incidents: IncidentLog,
        sleep: Callable[[float], None],
        should_stop: Callable[[], bool],
        on_retry: Callable[[RetryBudget, Classification], None] | None = None,
        new_session_id: Callable[[], str] | None = None,
    ) -> None:
        self.settings = settings
        self.incidents = incidents
        self.sleep = sleep
        self.should_stop = should_stop
        self.on_retry = on_retry
        self.new_session_id = new_session_id or (lambda: str(uuid.uuid4()))

    def run(self, attempt_fn: AttemptFn, *, job_id: str) -> DispatchOutcome:
        tracker = RetryTracker.from_settings(self.settings)
        session_ids: list[str] = []
        last_incident: Path | None = None

        while True:
            session_id = self.new_session_id()
            session_ids.append(session_id)
            attempt = attempt_fn(session_id)
            classification = attempt.classification
            if not classification.is_failure:
                return DispatchOutcome(
                    attempt=attempt,
                    tracker=tracker,
                    session_ids=session_ids,
                    last_incident=last_incident,
                )

            budget = tracker.record(classification.outcome)
            last_incident = self.incidents.write_incident(
                job_id=job_id,
                outcome=classification.outcome,
                attempt=budget.used,
                budget=budget.limit,
                session_id=session_id,
                details=classification.to_event_details(),
                output=attempt.output,
            )
            logger.warning(
                "%s attempt %d/%d failed with %s (%s); incident: %s",
                job_id,
                budget.used,
                budget.limit,
                classification.outcome.value,
                classification.reason_code,
                last_incident,
            )
            if budget.exhausted:
                logger.error(
                    "%s exhausted %s retry budget after %d attempts",
                    job_id,
                    classification.outcome.value,
                    budget.used,
                )
                return DispatchOutcome(
                    attempt=attempt,
                    tracker=tracker,
                    session_ids=session_ids,
                    exhausted=budget,
                    last_incident=last_incident,
                )

            if self.on_retry is not None:
                self.on_retry(budget, classification)
            logger.info(
                "Retrying %s in %.0fs (%s)",
                job_id,
                budget.cooldown_seconds,
                tracker.describe(),
            )
            self.sleep(budget.cooldown_seconds)
            if self.should_stop():
                return DispatchOutcome(
                    attempt=attempt,
                    tracker=tracker,
                    session_ids=session_ids,
                    interrupted=True,
                    last_incident=last_incident,
                )
