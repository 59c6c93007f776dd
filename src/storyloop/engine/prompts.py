"""Instruction payloads handed to the executor."""

from __future__ import annotations

from pathlib import Path

from storyloop.engine.classifier import ALL_BLOCKED_SENTINEL, COMPLETE_SENTINEL
from storyloop.engine.models import Job, utc_now
from storyloop.engine.store import INBOX_FILENAME

VERIFICATION_FOCUSES: tuple[tuple[str, str], ...] = (
    (
        "desktop",
        "VIEWPORT FOCUS: Desktop (1920x1080). Verify all acceptance criteria at desktop "
        "resolution. Check layout, spacing, and interactions at full width.",
    ),
    (
        "mobile",
        "VIEWPORT FOCUS: Mobile (375x812 iPhone X). Verify all acceptance criteria at mobile "
        "resolution. Check responsive behavior, touch targets, and mobile-specific issues.",
    ),
    (
        "accessibility",
        "ACCESSIBILITY FOCUS: Verify keyboard navigation, screen reader compatibility, color "
        "contrast, and ARIA labels. Check all acceptance criteria with accessibility in mind.",
    ),
)

_DEFAULT_TEMPLATE = """\
You are an autonomous coding agent working through a queue of PRD stories.
Work on exactly one story per run. Model: {{MODEL}}.

The story queue lives in {{PRD_JSON_DIR}} and is read-only for you.
To add or change stories, write {{INBOX_PATH}} with
{"newJobs": [...], "updateJobs": [{"id": "...", ...}]}.

## Rules

- Implement the acceptance criteria of the current story only
- Run typecheck/tests if criteria require it
- Commit your changes before finishing
- Do NOT keep retrying blocked tasks

## Reporting

Finish with one result footer on its own line:
<result>{"checked": [<criterion indices you completed>], "done": false}</result>
If you cannot proceed, add "blocked": {"kind": "decision|external|infra", "detail": "..."}.

When done, output exactly one of:
- {{COMPLETE_SENTINEL}} when no pending stories remain
- {{ALL_BLOCKED_SENTINEL}} when only blocked stories remain
- nothing, when more stories remain

Working directory: {{WORKING_DIR}}
Started: {{ISO_TIMESTAMP}}
"""


def render_template(
    template: str,
    *,
    model: str,
    store_dir: Path,
    working_dir: Path,
) -> str:
    """Substitute `{{PLACEHOLDER}}` markers in an instruction template."""

    values = {
        "MODEL": model,
        "PRD_JSON_DIR": str(store_dir),
        "INBOX_PATH": str(store_dir / INBOX_FILENAME),
        "WORKING_DIR": str(working_dir),
        "ISO_TIMESTAMP": utc_now().strftime("%Y-%m-%dT%H:%M:%SZ"),
        "COMPLETE_SENTINEL": COMPLETE_SENTINEL,
        "ALL_BLOCKED_SENTINEL": ALL_BLOCKED_SENTINEL,
    }
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace("{{" + key + "}}", value)
    return rendered


def build_instructions(
    job: Job,
    *,
    model: str,
    store_dir: Path,
    working_dir: Path,
    template_path: Path | None = None,
) -> str:
    """Base instructions plus the current story rendered inline."""

    template = (
        template_path.read_text("utf-8") if template_path is not None else _DEFAULT_TEMPLATE
    )
    header = render_template(template, model=model, store_dir=store_dir, working_dir=working_dir)
    return f"{header.rstrip()}\n\n{describe_job(job)}"


def describe_job(job: Job) -> str:
    lines = [f"## Current story: {job.id} - {job.title}".rstrip(" -")]
    if job.description:
        lines.extend(["", job.description])
    if job.acceptance_criteria:
        lines.extend(["", "Acceptance criteria:"])
        for index, criterion in enumerate(job.acceptance_criteria):
            mark = "x" if criterion.checked else " "
            lines.append(f"{index}. [{mark}] {criterion.text}")
    return "\n".join(lines)


def with_focus(base_instructions: str, focus_index: int) -> tuple[str, str]:
    """Prefix instructions with one verification focus; returns (label, text)."""

    label, preamble = VERIFICATION_FOCUSES[focus_index]
    return label, f"{preamble}\n\n{base_instructions}"
