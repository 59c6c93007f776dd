"""Hot-reload merger for the staged update inbox."""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from storyloop.engine.contracts import load_json, parse_inbox
from storyloop.engine.errors import (
    InvariantViolation,
    MergeFailure,
    StoreError,
    UnknownJobError,
)
from storyloop.engine.models import Job, UpdateInbox, utc_now
from storyloop.engine.store import JobStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergeReport:
    """Counters for one merge; `applied` is False when there was no inbox."""

    applied: bool = False
    appended: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    patched: list[str] = field(default_factory=list)
    moved_to_pending: list[str] = field(default_factory=list)
    moved_to_blocked: list[str] = field(default_factory=list)

    def describe(self) -> str:
        parts = [
            f"{name}={len(ids)}"
            for name, ids in (
                ("appended", self.appended),
                ("queued", self.queued),
                ("patched", self.patched),
                ("unblocked", self.moved_to_pending),
                ("blocked", self.moved_to_blocked),
            )
            if ids
        ]
        return ", ".join(parts) or "no changes"


class UpdateMerger:
    """Validate the whole inbox into a plan, then apply it through the store.

    The inbox is removed only after every entry has been applied. A malformed
    artifact is moved to the dead-letter directory; a failure while applying
    leaves it in place, and the next merge re-applies it idempotently.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        dead_letter_dir: Path,
        inbox_path: Path | None = None,
    ) -> None:
        self.store = store
        self.dead_letter_dir = dead_letter_dir
        self.inbox_path = inbox_path or store.inbox_path

    def merge(self) -> MergeReport:
        if not self.inbox_path.exists():
            return MergeReport()

        try:
            inbox = parse_inbox(load_json(self.inbox_path))
            self._validate(inbox)
        except (
            json.JSONDecodeError,
            TypeError,
            ValueError,
            UnknownJobError,
            InvariantViolation,
        ) as error:
            dead_letter_path = self._dead_letter()
            where = dead_letter_path or self.inbox_path
            raise MergeFailure(
                f"Malformed update inbox ({where}): {error}",
                dead_letter_path=dead_letter_path,
            ) from error
        except OSError as error:
            raise MergeFailure(f"Cannot read update inbox {self.inbox_path}: {error}") from error

        try:
            report = self._apply(inbox)
        except (StoreError, OSError, TypeError, ValueError) as error:
            raise MergeFailure(
                f"Update inbox left in place for retry after partial merge: {error}",
            ) from error

        self.inbox_path.unlink(missing_ok=True)
        logger.info("Merged update inbox: %s", report.describe())
        return report

    def _validate(self, inbox: UpdateInbox) -> None:
        batch: dict[str, Job] = {}
        for entry in inbox.new_jobs:
            if not isinstance(entry, Job):
                continue
            first = batch.setdefault(entry.id, entry)
            if first != entry:
                raise InvariantViolation(f"New job {entry.id} is listed twice with different data")
        pending = {job_id: job for job_id, job in batch.items() if job_id not in self.store}
        batch_ids = set(pending)
        known = {job.id for job in self.store.jobs()} | batch_ids

        for job in batch.values():
            for blocker in job.blocked_by:
                if blocker == job.id or blocker not in known:
                    raise UnknownJobError(blocker)
            if job.passes and not job.all_checked:
                raise InvariantViolation(f"New job {job.id} passes with unchecked criteria")

        bare_ids = [entry for entry in inbox.new_jobs if isinstance(entry, str)]
        for job_id in [*bare_ids, *inbox.pending, *inbox.story_order, *inbox.move_to_pending]:
            if job_id not in known:
                raise UnknownJobError(job_id)

        for patch in inbox.patches:
            self.store.check_patch(patch.job_id, patch.fields, pending=pending)

        for job_id, _ in inbox.move_to_blocked:
            if job_id not in known:
                raise UnknownJobError(job_id)
            if job_id in self.store and self.store.get(job_id).passes:
                raise InvariantViolation(f"Cannot block completed job {job_id}")

    def _apply(self, inbox: UpdateInbox) -> MergeReport:
        report = MergeReport(applied=True)
        new_objects = [entry for entry in inbox.new_jobs if isinstance(entry, Job)]
        report.appended = self.store.append_jobs(new_objects)

        new_ids = [entry.id if isinstance(entry, Job) else entry for entry in inbox.new_jobs]
        for job_id in dict.fromkeys([*new_ids, *inbox.pending]):
            if self.store.ensure_queued(job_id):
                report.queued.append(job_id)
        self.store.extend_order(inbox.story_order)

        for patch in inbox.patches:
            self.store.apply_patch(patch.job_id, patch.fields)
            report.patched.append(patch.job_id)

        for job_id in inbox.move_to_pending:
            if self.store.promote(job_id):
                report.moved_to_pending.append(job_id)

        for job_id, reason in inbox.move_to_blocked:
            self.store.mark_blocked(job_id, reason)
            report.moved_to_blocked.append(job_id)
        return report

    def _dead_letter(self) -> Path | None:
        self.dead_letter_dir.mkdir(parents=True, exist_ok=True)
        stamp = utc_now().strftime("%Y%m%d-%H%M%S-%f")
        target = self.dead_letter_dir / f"update-{stamp}.json"
        try:
            shutil.move(str(self.inbox_path), target)
        except OSError:
            logger.exception("Failed to move malformed inbox %s to dead-letter", self.inbox_path)
            return None
        logger.warning("Moved malformed update inbox to %s", target)
        return target
