"""Domain models for the story queue and executor attempts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class OutcomeClass(str, Enum):
    """Normalized result categories assigned to one executor run."""

    SUCCESS = "success"
    SIGNAL_COMPLETE = "signal_complete"
    SIGNAL_ALL_BLOCKED = "signal_all_blocked"
    USER_CANCELLED = "user_cancelled"
    NO_RESPONSE = "no_response"
    TRANSIENT_INFRA = "transient_infra"


class BlockKind(str, Enum):
    """Why a job sits in the blocked partition."""

    INFRA = "infra"
    DECISION = "decision"
    EXTERNAL = "external"


class EngineExit(IntEnum):
    """Process exit codes of the engine."""

    COMPLETE = 0
    MAX_ITERATIONS = 1
    BLOCKED = 2
    USER_CANCELLED = 130


@dataclass(frozen=True, slots=True)
class BlockReason:
    """Tagged block reason persisted next to the job."""

    kind: BlockKind
    detail: str = ""

    @classmethod
    def infra(cls, detail: str) -> BlockReason:
        return cls(kind=BlockKind.INFRA, detail=detail)

    @classmethod
    def decision(cls, detail: str) -> BlockReason:
        return cls(kind=BlockKind.DECISION, detail=detail)

    @classmethod
    def external(cls, detail: str) -> BlockReason:
        return cls(kind=BlockKind.EXTERNAL, detail=detail)

    def to_payload(self) -> dict[str, str]:
        return {"kind": self.kind.value, "detail": self.detail}


@dataclass(slots=True)
class Criterion:
    """One acceptance criterion; `checked` never flips back to false."""

    text: str
    checked: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {"text": self.text, "checked": self.checked}


@dataclass(slots=True)
class Job:
    """One story tracked to completion by its acceptance criteria."""

    id: str
    title: str = ""
    description: str = ""
    acceptance_criteria: list[Criterion] = field(default_factory=list)
    passes: bool = False
    blocked_by: list[str] = field(default_factory=list)
    block_reason: BlockReason | None = None
    model: str | None = None
    completed_at: str | None = None
    completed_by: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def prefix(self) -> str:
        """Category prefix encoded in the id, e.g. `US` for `US-012`."""

        head, sep, _ = self.id.partition("-")
        return head.upper() if sep else ""

    @property
    def all_checked(self) -> bool:
        return all(criterion.checked for criterion in self.acceptance_criteria)

    def first_unchecked(self) -> tuple[int, Criterion] | None:
        for index, criterion in enumerate(self.acceptance_criteria):
            if not criterion.checked:
                return index, criterion
        return None


@dataclass(slots=True)
class QueueIndex:
    """Queue partitions; `next_job` is derived from `pending`."""

    story_order: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def next_job(self) -> str | None:
        return self.pending[0] if self.pending else None


@dataclass(slots=True)
class JobPatch:
    """Validated partial update for an existing job."""

    job_id: str
    fields: dict[str, Any]


@dataclass(slots=True)
class UpdateInbox:
    """Parsed hot-reload artifact staged by an external collaborator."""

    new_jobs: list[Job | str] = field(default_factory=list)
    patches: list[JobPatch] = field(default_factory=list)
    move_to_pending: list[str] = field(default_factory=list)
    move_to_blocked: list[tuple[str, BlockReason]] = field(default_factory=list)
    story_order: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.new_jobs
            or self.patches
            or self.move_to_pending
            or self.move_to_blocked
            or self.story_order
            or self.pending
        )


@dataclass(slots=True)
class ExecutionAttempt:
    """Transient record of one dispatch; never persisted to the store."""

    job_id: str
    model: str
    session_id: str
    started_at: datetime
    attempt_counts: dict[OutcomeClass, int] = field(default_factory=dict)
    label: str = "main"


@dataclass(slots=True)
class FalseCompletionSignal:
    """Executor claimed a terminal state the store does not confirm."""

    job_id: str
    claimed: OutcomeClass
    pending_count: int
    blocked_count: int


@dataclass(slots=True)
class QueueSnapshot:
    """Read-only view of queue progress delivered to observers."""

    pending: int
    blocked: int
    completed: int
    total: int
    next_job: str | None
    criteria_checked: int
    criteria_total: int
