from __future__ import annotations

from pathlib import Path

import allure

from storyloop.config import RoutingSettings
from storyloop.engine.classifier import COMPLETE_SENTINEL
from storyloop.engine.models import Criterion, Job
from storyloop.engine.prompts import build_instructions, describe_job, with_focus
from storyloop.engine.routing import resolve_model

pytestmark = [
    allure.epic("Story Engine"),
    allure.feature("Model Routing"),
]


def test_job_override_wins() -> None:
    resolved = resolve_model(Job(id="US-001", model=" opus "), RoutingSettings())

    assert resolved.model == "opus"
    assert resolved.resolved_by == "job_override"


def test_smart_strategy_routes_by_prefix() -> None:
    settings = RoutingSettings()

    assert resolve_model(Job(id="US-001"), settings).model == "sonnet"
    assert resolve_model(Job(id="V-002"), settings).resolved_by == "prefix:V"
    assert resolve_model(Job(id="v-003"), settings).model == "haiku"


def test_unknown_prefix_and_default_model() -> None:
    settings = RoutingSettings(unknown_prefix_model="sonnet", default_model="opus")

    unknown = resolve_model(Job(id="SPIKE-1"), settings)
    fallback = resolve_model(Job(id="SPIKE-1"), RoutingSettings(unknown_prefix_model=""))

    assert unknown.to_metadata() == {"model": "sonnet", "resolved_by": "unknown_prefix"}
    assert fallback.to_metadata() == {"model": "opus", "resolved_by": "default_model"}


def test_single_strategy_ignores_prefix() -> None:
    resolved = resolve_model(Job(id="V-001"), RoutingSettings(strategy="single"))

    assert resolved.model == "opus"
    assert resolved.resolved_by == "single_strategy"


def test_describe_job_lists_zero_based_criteria() -> None:
    job = Job(
        id="US-004",
        title="Export",
        description="CSV export for reports.",
        acceptance_criteria=[Criterion("button", checked=True), Criterion("download")],
    )

    assert describe_job(job) == (
        "## Current story: US-004 - Export\n"
        "\n"
        "CSV export for reports.\n"
        "\n"
        "Acceptance criteria:\n"
        "0. [x] button\n"
        "1. [ ] download"
    )


def test_build_instructions_renders_placeholders(tmp_path: Path) -> None:
    instructions = build_instructions(
        Job(id="US-001", title="Login"),
        model="sonnet",
        store_dir=tmp_path / "prd-json",
        working_dir=tmp_path,
    )

    assert "Model: sonnet." in instructions
    assert str(tmp_path / "prd-json" / "update.json") in instructions
    assert COMPLETE_SENTINEL in instructions
    assert "{{" not in instructions
    assert instructions.endswith("## Current story: US-001 - Login")


def test_build_instructions_uses_custom_template(tmp_path: Path) -> None:
    template = tmp_path / "prompt.md"
    template.write_text("Custom for {{MODEL}} in {{WORKING_DIR}}\n", "utf-8")

    instructions = build_instructions(
        Job(id="BUG-9"),
        model="haiku",
        store_dir=tmp_path,
        working_dir=tmp_path,
        template_path=template,
    )

    assert instructions == f"Custom for haiku in {tmp_path}\n\n## Current story: BUG-9"


def test_with_focus_prefixes_preamble() -> None:
    label, text = with_focus("base", 2)

    assert label == "accessibility"
    assert text.startswith("ACCESSIBILITY FOCUS:")
    assert text.endswith("\n\nbase")
