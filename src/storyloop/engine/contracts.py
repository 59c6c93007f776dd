"""On-disk JSON contracts for the story store and the update inbox."""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any

from storyloop.engine.models import (
    BlockKind,
    BlockReason,
    Criterion,
    Job,
    JobPatch,
    QueueIndex,
    UpdateInbox,
)

_JOB_KEYS = frozenset(
    {
        "id",
        "title",
        "description",
        "acceptanceCriteria",
        "passes",
        "blockedBy",
        "blockReason",
        "model",
        "completedAt",
        "completedBy",
    },
)
_INDEX_KEYS = frozenset({"storyOrder", "pending", "blocked", "nextJob", "nextStory"})
PATCHABLE_KEYS = frozenset(
    {"title", "description", "acceptanceCriteria", "blockedBy", "blockReason", "model"},
)
IMMUTABLE_PATCH_KEYS = frozenset({"id", "passes", "completedAt", "completedBy"})


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON using deterministic formatting and an atomic replace."""

    text = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)
    write_text_atomic(path, text + "\n")


def write_text_atomic(path: Path, text: str) -> None:
    """Write to a temp file in the same directory, fsync, then rename over `path`."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def parse_criteria(value: Any, *, field_name: str = "acceptanceCriteria") -> list[Criterion]:
    """Accept `[{text, checked}]` or a bare list of strings."""

    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"{field_name} must be a list")
    criteria: list[Criterion] = []
    for position, item in enumerate(value):
        if isinstance(item, str):
            criteria.append(Criterion(text=item, checked=False))
            continue
        if not isinstance(item, dict):
            raise TypeError(f"{field_name}[{position}] must be a string or an object")
        text = item.get("text", item.get("description", ""))
        if not isinstance(text, str):
            raise TypeError(f"{field_name}[{position}].text must be a string")
        checked = item.get("checked", False)
        if not isinstance(checked, bool):
            raise TypeError(f"{field_name}[{position}].checked must be a boolean")
        criteria.append(Criterion(text=text, checked=checked))
    return criteria


def parse_block_reason(value: Any) -> BlockReason | None:
    """Parse a tagged reason object, or a legacy `kind: detail` string."""

    if value is None:
        return None
    if isinstance(value, dict):
        kind = value.get("kind", BlockKind.EXTERNAL.value)
        detail = value.get("detail", "")
        if not isinstance(detail, str):
            raise TypeError("blockReason.detail must be a string")
        try:
            return BlockReason(kind=BlockKind(kind), detail=detail)
        except ValueError as error:
            raise ValueError(f"Unsupported blockReason kind: {kind!r}") from error
    if isinstance(value, str):
        head, sep, tail = value.partition(":")
        normalized = head.strip().lower()
        if sep and normalized in {kind.value for kind in BlockKind}:
            return BlockReason(kind=BlockKind(normalized), detail=tail.strip())
        return BlockReason.external(value.strip())
    raise TypeError("blockReason must be an object or a string")


def parse_blocked_by(value: Any) -> list[str]:
    """Normalize `blockedBy` to a list of ids; a legacy string becomes one entry."""

    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(dict.fromkeys(value))
    raise TypeError("blockedBy must be a job id or a list of job ids")


def parse_job(payload: dict[str, Any]) -> Job:
    """Parse one job document."""

    job_id = payload.get("id")
    if not isinstance(job_id, str) or not job_id.strip():
        raise ValueError("Job must have a non-empty string id")
    passes = payload.get("passes", False)
    if not isinstance(passes, bool):
        raise TypeError(f"{job_id}: passes must be a boolean")
    return Job(
        id=job_id,
        title=_optional_str(payload, "title") or "",
        description=_optional_str(payload, "description") or "",
        acceptance_criteria=parse_criteria(payload.get("acceptanceCriteria")),
        passes=passes,
        blocked_by=parse_blocked_by(payload.get("blockedBy")),
        block_reason=parse_block_reason(payload.get("blockReason")),
        model=_optional_str(payload, "model"),
        completed_at=_optional_str(payload, "completedAt"),
        completed_by=_optional_str(payload, "completedBy"),
        extra={key: value for key, value in payload.items() if key not in _JOB_KEYS},
    )


def job_to_payload(job: Job) -> dict[str, Any]:
    """Serialize a job document; optional fields are omitted when unset."""

    payload: dict[str, Any] = dict(job.extra)
    payload.update(
        {
            "id": job.id,
            "title": job.title,
            "description": job.description,
            "acceptanceCriteria": [item.to_payload() for item in job.acceptance_criteria],
            "passes": job.passes,
        },
    )
    if job.blocked_by:
        payload["blockedBy"] = list(job.blocked_by)
    if job.block_reason is not None:
        payload["blockReason"] = job.block_reason.to_payload()
    if job.model:
        payload["model"] = job.model
    if job.completed_at:
        payload["completedAt"] = job.completed_at
    if job.completed_by:
        payload["completedBy"] = job.completed_by
    return payload


def parse_index(payload: dict[str, Any]) -> QueueIndex:
    """Parse the queue index; the cached next pointer is ignored."""

    return QueueIndex(
        story_order=_id_list(payload, "storyOrder"),
        pending=_id_list(payload, "pending"),
        blocked=_id_list(payload, "blocked"),
        extra={key: value for key, value in payload.items() if key not in _INDEX_KEYS},
    )


def index_to_payload(index: QueueIndex) -> dict[str, Any]:
    payload: dict[str, Any] = dict(index.extra)
    payload.update(
        {
            "storyOrder": list(index.story_order),
            "pending": list(index.pending),
            "blocked": list(index.blocked),
            "nextJob": index.next_job,
        },
    )
    return payload


def parse_inbox(payload: dict[str, Any]) -> UpdateInbox:
    """Parse a staged update artifact; raises on any malformed entry."""

    new_entries = _first_present(payload, "newJobs", "newStories")
    update_entries = _first_present(payload, "updateJobs", "updateStories")
    inbox = UpdateInbox(
        story_order=_id_list(payload, "storyOrder"),
        pending=_id_list(payload, "pending"),
        move_to_pending=_id_list(payload, "moveToPending"),
    )

    if not isinstance(new_entries, list):
        raise TypeError("newJobs must be a list")
    for position, entry in enumerate(new_entries):
        if isinstance(entry, str):
            inbox.new_jobs.append(entry)
        elif isinstance(entry, dict):
            inbox.new_jobs.append(parse_job(entry))
        else:
            raise TypeError(f"newJobs[{position}] must be a job id or a job object")

    if not isinstance(update_entries, list):
        raise TypeError("updateJobs must be a list")
    for position, entry in enumerate(update_entries):
        if not isinstance(entry, dict):
            raise TypeError(f"updateJobs[{position}] must be an object")
        job_id = entry.get("id")
        if not isinstance(job_id, str) or not job_id:
            raise ValueError(f"updateJobs[{position}] is missing an id")
        fields = {key: value for key, value in entry.items() if key != "id"}
        if "acceptanceCriteria" in fields:
            fields["acceptanceCriteria"] = parse_criteria(fields["acceptanceCriteria"])
        if "blockedBy" in fields:
            fields["blockedBy"] = parse_blocked_by(fields["blockedBy"])
        if "blockReason" in fields:
            fields["blockReason"] = parse_block_reason(fields["blockReason"])
        inbox.patches.append(JobPatch(job_id=job_id, fields=fields))

    blocked_entries = payload.get("moveToBlocked", [])
    if not isinstance(blocked_entries, list):
        raise TypeError("moveToBlocked must be a list")
    for position, entry in enumerate(blocked_entries):
        if isinstance(entry, str):
            inbox.move_to_blocked.append((entry, BlockReason.external("")))
            continue
        if (
            isinstance(entry, list)
            and len(entry) == 2  # noqa: PLR2004
            and isinstance(entry[0], str)
        ):
            reason = parse_block_reason(entry[1]) or BlockReason.external("")
            inbox.move_to_blocked.append((entry[0], reason))
            continue
        raise TypeError(f"moveToBlocked[{position}] must be an id or an [id, reason] pair")
    return inbox


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return []


def _id_list(payload: dict[str, Any], key: str) -> list[str]:
    value = payload.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise TypeError(f"{key} must be a list of job ids")
    return list(value)


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value
