"""Durable JSON job store: one index file plus one file per job."""

from __future__ import annotations

import json
import logging
from collections.abc import Collection, Iterable, Mapping
from pathlib import Path
from typing import Any

from storyloop.engine.contracts import (
    IMMUTABLE_PATCH_KEYS,
    index_to_payload,
    job_to_payload,
    load_json,
    parse_index,
    parse_job,
    write_json,
)
from storyloop.engine.errors import (
    InvariantViolation,
    StoreCorruptError,
    StoreError,
    UnknownJobError,
)
from storyloop.engine.models import (
    BlockReason,
    Criterion,
    Job,
    QueueIndex,
    QueueSnapshot,
    utc_now,
)

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"
STORIES_DIRNAME = "stories"
INBOX_FILENAME = "update.json"


class JobStore:
    """Sole source of truth for jobs and queue order.

    Every mutation updates `pending`/`blocked` membership, writes the touched
    job files and then the index. The index write is the commit point, so a
    crash between the two leaves job files ahead of the index but never an
    index that references state which was not persisted.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.index_path = root / INDEX_FILENAME
        self.stories_dir = root / STORIES_DIRNAME
        self.inbox_path = root / INBOX_FILENAME
        self._index = QueueIndex()
        self._jobs: dict[str, Job] = {}
        self._loaded = False

    @classmethod
    def open(cls, root: Path) -> JobStore:
        """Create a store and load it, failing fast on any inconsistency."""

        store = cls(root)
        store.load()
        return store

    @classmethod
    def initialize(cls, root: Path, jobs: Iterable[Job]) -> JobStore:
        """Write a fresh store with all unfinished jobs pending, in order."""

        store = cls(root)
        store._loaded = True
        for job in jobs:
            store._check_completion_invariant(job)
            store._jobs[job.id] = job
            store._index.story_order.append(job.id)
            if not job.passes:
                store._index.pending.append(job.id)
        store._commit(*store._jobs)
        return store

    def load(self) -> None:
        """Read index and job files; missing or corrupt files are fatal."""

        if not self.index_path.exists():
            raise StoreCorruptError(f"Index file not found: {self.index_path}")
        try:
            index = parse_index(load_json(self.index_path))
        except (OSError, json.JSONDecodeError, TypeError, ValueError) as error:
            raise StoreCorruptError(f"Corrupt index {self.index_path}: {error}") from error

        _require_unique(index.story_order, "storyOrder")
        _require_unique(index.pending, "pending")
        _require_unique(index.blocked, "blocked")
        known = set(index.story_order)
        for name, ids in (("pending", index.pending), ("blocked", index.blocked)):
            unknown = [job_id for job_id in ids if job_id not in known]
            if unknown:
                raise StoreCorruptError(f"{name} references ids not in storyOrder: {unknown}")
        overlap = set(index.pending) & set(index.blocked)
        if overlap:
            raise StoreCorruptError(f"Ids are both pending and blocked: {sorted(overlap)}")

        jobs: dict[str, Job] = {}
        for job_id in index.story_order:
            jobs[job_id] = self._load_job_file(job_id, known=known)

        for job in jobs.values():
            self._check_completion_invariant(job)
            for blocker in job.blocked_by:
                if blocker == job.id:
                    raise StoreCorruptError(f"{job.id} is blocked by itself")

        for job_id in [*index.pending, *index.blocked]:
            if jobs[job_id].passes:
                logger.warning("Dropping completed job %s from queue partitions", job_id)
                _discard(index.pending, job_id)
                _discard(index.blocked, job_id)

        self._index = index
        self._jobs = jobs
        self._loaded = True
        logger.debug(
            "Loaded store %s: %d jobs, %d pending, %d blocked",
            self.root,
            len(jobs),
            len(index.pending),
            len(index.blocked),
        )

    def _load_job_file(self, job_id: str, *, known: set[str]) -> Job:
        path = self.job_path(job_id)
        if not path.exists():
            raise StoreCorruptError(f"Job file not found for {job_id}: {path}")
        try:
            raw = load_json(path)
            job = parse_job(raw)
        except (OSError, json.JSONDecodeError, TypeError, ValueError) as error:
            raise StoreCorruptError(f"Corrupt job file {path}: {error}") from error
        if job.id != job_id:
            raise StoreCorruptError(f"Job file {path} holds id {job.id!r}, expected {job_id!r}")

        unknown = [blocker for blocker in job.blocked_by if blocker not in known]
        if unknown and isinstance(raw.get("blockedBy"), str):
            # Legacy free-text blocker: not a job reference.
            job.blocked_by = []
            if job.block_reason is None:
                job.block_reason = BlockReason.external(unknown[0])
        elif unknown:
            raise StoreCorruptError(f"{job_id} is blocked by unknown jobs: {unknown}")
        return job

    def job_path(self, job_id: str) -> Path:
        return self.stories_dir / f"{job_id}.json"

    @property
    def index(self) -> QueueIndex:
        """Copy of the queue index."""

        self._require_loaded()
        return QueueIndex(
            story_order=list(self._index.story_order),
            pending=list(self._index.pending),
            blocked=list(self._index.blocked),
            extra=dict(self._index.extra),
        )

    def jobs(self) -> list[Job]:
        self._require_loaded()
        return [self._jobs[job_id] for job_id in self._index.story_order]

    def get(self, job_id: str) -> Job:
        self._require_loaded()
        try:
            return self._jobs[job_id]
        except KeyError as error:
            raise UnknownJobError(job_id) from error

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def next_pending(self) -> str | None:
        self._require_loaded()
        return self._index.next_job

    @property
    def pending_count(self) -> int:
        return len(self._index.pending)

    @property
    def blocked_ids(self) -> list[str]:
        return list(self._index.blocked)

    def is_pending(self, job_id: str) -> bool:
        return job_id in self._index.pending

    def is_blocked(self, job_id: str) -> bool:
        return job_id in self._index.blocked

    def mark_criterion(self, job_id: str, index: int) -> bool:
        """Check one criterion; returns False when it was already checked."""

        job = self.get(job_id)
        if index < 0 or index >= len(job.acceptance_criteria):
            raise InvariantViolation(
                f"{job_id} has no criterion #{index} "
                f"({len(job.acceptance_criteria)} criteria)",
            )
        criterion = job.acceptance_criteria[index]
        if criterion.checked:
            return False
        criterion.checked = True
        self._commit(job_id)
        return True

    def mark_complete(self, job_id: str, *, completed_by: str = "storyloop") -> bool:
        """Mark a job complete once; returns False when it already was."""

        job = self.get(job_id)
        if job.passes:
            return False
        unchecked = [item.text for item in job.acceptance_criteria if not item.checked]
        if unchecked:
            raise InvariantViolation(
                f"Cannot complete {job_id}: {len(unchecked)} unchecked criteria "
                f"(first: {unchecked[0]!r})",
            )
        job.passes = True
        job.completed_at = utc_now().isoformat()
        job.completed_by = completed_by
        job.block_reason = None
        _discard(self._index.pending, job_id)
        _discard(self._index.blocked, job_id)
        self._commit(job_id)
        logger.info("Job %s completed by %s", job_id, completed_by)
        return True

    def mark_blocked(
        self,
        job_id: str,
        reason: BlockReason,
        *,
        blocked_by: Iterable[str] = (),
    ) -> None:
        """Move a job to the blocked partition with a tagged reason."""

        job = self.get(job_id)
        if job.passes:
            raise InvariantViolation(f"Cannot block completed job {job_id}")
        blockers = list(dict.fromkeys(blocked_by))
        self._validate_blockers(job_id, blockers)
        for blocker in blockers:
            if blocker not in job.blocked_by:
                job.blocked_by.append(blocker)
        job.block_reason = reason
        _discard(self._index.pending, job_id)
        if job_id not in self._index.blocked:
            self._index.blocked.append(job_id)
        self._commit(job_id)
        logger.info("Job %s blocked (%s: %s)", job_id, reason.kind.value, reason.detail)

    def append_job(self, job: Job) -> bool:
        """Add a job at the tail of the queue; no-op if the id exists."""

        return bool(self.append_jobs([job]))

    def append_jobs(self, jobs: Iterable[Job]) -> list[str]:
        """Add several jobs at once; blockers may reference jobs in the batch."""

        self._require_loaded()
        batch: dict[str, Job] = {}
        for job in jobs:
            if job.id not in self._jobs:
                batch.setdefault(job.id, job)
        fresh = list(batch.values())
        batch_ids = set(batch)
        for job in fresh:
            self._check_completion_invariant(job)
            for blocker in job.blocked_by:
                if blocker == job.id or (blocker not in self._jobs and blocker not in batch_ids):
                    raise UnknownJobError(blocker)
        if not fresh:
            return []
        for job in fresh:
            self._jobs[job.id] = job
            self._index.story_order.append(job.id)
            if not job.passes:
                self._index.pending.append(job.id)
        appended = [job.id for job in fresh]
        self._commit(*appended)
        logger.info("Appended jobs: %s", ", ".join(appended))
        return appended

    def check_patch(
        self,
        job_id: str,
        fields: dict[str, Any],
        *,
        pending: Mapping[str, Job] | None = None,
    ) -> None:
        """Raise if applying `fields` would break an invariant; mutates nothing.

        `pending` holds jobs about to be appended in the same batch; a patch
        may target one of them before it reaches the store.
        """

        pending = pending or {}
        job = self._jobs.get(job_id) or pending.get(job_id) or self.get(job_id)
        blockers = fields.get("blockedBy")
        if blockers:
            self._validate_blockers(job_id, blockers, pending_ids=pending)
        criteria = fields.get("acceptanceCriteria")
        if criteria is not None and job.passes:
            merged = _merge_criteria(job.acceptance_criteria, criteria)
            if not all(item.checked for item in merged):
                raise InvariantViolation(f"Patch would reopen completed job {job_id}")
        for key in ("title", "description", "model"):
            if key in fields and fields[key] is not None and not isinstance(fields[key], str):
                raise TypeError(f"{job_id}: {key} must be a string")

    def apply_patch(self, job_id: str, fields: dict[str, Any]) -> None:
        """Shallow-merge a parsed patch; checked criteria stay checked."""

        self.check_patch(job_id, fields)
        job = self.get(job_id)
        for key, value in fields.items():
            if key in IMMUTABLE_PATCH_KEYS:
                logger.debug("Ignoring immutable field %s in patch for %s", key, job_id)
            elif key == "acceptanceCriteria":
                job.acceptance_criteria = _merge_criteria(job.acceptance_criteria, value)
            elif key == "blockedBy":
                job.blocked_by = list(value or [])
            elif key == "blockReason":
                job.block_reason = value
            elif key == "title":
                job.title = value or ""
            elif key == "description":
                job.description = value or ""
            elif key == "model":
                job.model = value or None
            else:
                job.extra[key] = value
        self._commit(job_id)

    def ensure_queued(self, job_id: str) -> bool:
        """Set-union an existing job into `storyOrder` and `pending`."""

        job = self.get(job_id)
        changed = False
        if job_id not in self._index.story_order:
            self._index.story_order.append(job_id)
            changed = True
        if not job.passes and job_id not in self._index.pending and not self.is_blocked(job_id):
            self._index.pending.append(job_id)
            changed = True
        if changed:
            self._commit()
        return changed

    def extend_order(self, job_ids: Iterable[str]) -> bool:
        """Set-union ids into `storyOrder` only."""

        changed = False
        for job_id in job_ids:
            self.get(job_id)
            if job_id not in self._index.story_order:
                self._index.story_order.append(job_id)
                changed = True
        if changed:
            self._commit()
        return changed

    def promote(self, job_id: str) -> bool:
        """Move a blocked job to the tail of `pending`, clearing its blockers."""

        job = self.get(job_id)
        if job_id not in self._index.blocked and job_id in self._index.pending:
            return False
        _discard(self._index.blocked, job_id)
        job.blocked_by = []
        job.block_reason = None
        if not job.passes and job_id not in self._index.pending:
            self._index.pending.append(job_id)
        self._commit(job_id)
        return True

    def demote(self, job_id: str, reason: BlockReason | None = None) -> bool:
        """Move a pending job into `blocked`, keeping its blockers."""

        job = self.get(job_id)
        if job_id not in self._index.pending:
            return False
        _discard(self._index.pending, job_id)
        self._index.blocked.append(job_id)
        if reason is not None:
            job.block_reason = reason
        self._commit(job_id)
        return True

    def defer(self, job_id: str) -> bool:
        """Move a pending job to the tail of `pending`."""

        self.get(job_id)
        if job_id not in self._index.pending or self._index.pending[-1] == job_id:
            return False
        _discard(self._index.pending, job_id)
        self._index.pending.append(job_id)
        self._commit()
        return True

    def complete_satisfied(self, *, completed_by: str = "storyloop") -> list[str]:
        """Complete every pending job whose criteria are all checked."""

        done: list[str] = []
        for job_id in list(self._index.pending):
            job = self._jobs[job_id]
            if job.acceptance_criteria and job.all_checked:
                self.mark_complete(job_id, completed_by=completed_by)
                done.append(job_id)
        return done

    def snapshot(self) -> QueueSnapshot:
        jobs = self.jobs()
        return QueueSnapshot(
            pending=len(self._index.pending),
            blocked=len(self._index.blocked),
            completed=sum(1 for job in jobs if job.passes),
            total=len(jobs),
            next_job=self._index.next_job,
            criteria_checked=sum(
                1 for job in jobs for item in job.acceptance_criteria if item.checked
            ),
            criteria_total=sum(len(job.acceptance_criteria) for job in jobs),
        )

    def _validate_blockers(
        self,
        job_id: str,
        blockers: Iterable[str],
        *,
        pending_ids: Collection[str] = (),
    ) -> None:
        for blocker in blockers:
            if blocker == job_id:
                raise InvariantViolation(f"{job_id} cannot be blocked by itself")
            if blocker not in self._jobs and blocker not in pending_ids:
                raise UnknownJobError(blocker)

    def _check_completion_invariant(self, job: Job) -> None:
        if job.passes and not job.all_checked:
            raise InvariantViolation(f"{job.id} passes with unchecked criteria")

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise StoreError("Job store is not loaded")

    def _commit(self, *job_ids: str) -> None:
        try:
            for job_id in job_ids:
                write_json(self.job_path(job_id), job_to_payload(self._jobs[job_id]))
            write_json(self.index_path, index_to_payload(self._index))
        except OSError as error:
            raise StoreError(f"Failed to persist store {self.root}: {error}") from error


def _merge_criteria(current: list[Criterion], incoming: list[Criterion]) -> list[Criterion]:
    checked_texts = {item.text for item in current if item.checked}
    return [
        Criterion(text=item.text, checked=item.checked or item.text in checked_texts)
        for item in incoming
    ]


def _require_unique(ids: list[str], name: str) -> None:
    seen: set[str] = set()
    duplicates: set[str] = set()
    for job_id in ids:
        if job_id in seen:
            duplicates.add(job_id)
        seen.add(job_id)
    if duplicates:
        raise StoreCorruptError(f"{name} contains duplicate ids: {sorted(duplicates)}")


def _discard(ids: list[str], job_id: str) -> None:
    if job_id in ids:
        ids.remove(job_id)
