from __future__ import annotations

import allure

from storyloop.config import ClassifierSettings
from storyloop.engine.classifier import (
    ALL_BLOCKED_SENTINEL,
    COMPLETE_SENTINEL,
    NO_COMPLETION_REASON,
    OUTCOME_CLASSIFIER_VERSION,
    TextPatternClassifier,
    build_classifier,
    extract_failure_reason,
    parse_envelope,
)
from storyloop.engine.models import BlockKind, OutcomeClass

pytestmark = [
    allure.epic("Story Engine"),
    allure.feature("Outcome Classifier"),
]


def _narrative(lines: int, *, at: int, text: str) -> str:
    body = [f"step {number}: edited files" for number in range(lines)]
    body[at] = text
    return "\n".join(body)


def test_classifier_version_is_stable() -> None:
    assert OUTCOME_CLASSIFIER_VERSION == 1


def test_exit_130_wins_over_sentinels() -> None:
    classified = TextPatternClassifier().classify(
        exit_code=130,
        stdout=COMPLETE_SENTINEL,
        stderr="",
    )
    assert classified.outcome == OutcomeClass.USER_CANCELLED
    assert classified.matched_rule == "exit_code_130"


def test_sentinels_are_found_anywhere_in_stdout() -> None:
    classifier = TextPatternClassifier()

    complete = classifier.classify(
        exit_code=0,
        stdout=_narrative(40, at=20, text=f"done {COMPLETE_SENTINEL}"),
        stderr="",
    )
    blocked = classifier.classify(exit_code=0, stdout=ALL_BLOCKED_SENTINEL, stderr="")

    assert complete.outcome == OutcomeClass.SIGNAL_COMPLETE
    assert blocked.outcome == OutcomeClass.SIGNAL_ALL_BLOCKED


def test_no_response_pattern_in_tail() -> None:
    classified = TextPatternClassifier().classify(
        exit_code=1,
        stdout=_narrative(30, at=29, text="Error: No messages returned"),
        stderr="",
    )
    assert classified.outcome == OutcomeClass.NO_RESPONSE
    assert classified.is_failure is True


def test_error_words_in_the_middle_of_output_are_ignored() -> None:
    classified = TextPatternClassifier().classify(
        exit_code=0,
        stdout=_narrative(30, at=15, text="Added retry when we hit the rate limit"),
        stderr="",
    )
    assert classified.outcome == OutcomeClass.SUCCESS
    assert classified.matched_rule == "fallback_success"


def test_rate_limit_in_stderr_is_transient() -> None:
    classified = TextPatternClassifier().classify(
        exit_code=1,
        stdout="",
        stderr="HTTP 429 too many requests, please retry",
    )
    assert classified.outcome == OutcomeClass.TRANSIENT_INFRA
    assert classified.matched_rule == "rate_limit"
    assert classified.reason_code == "rate_limit_transient"


def test_server_error_is_transient() -> None:
    classified = TextPatternClassifier().classify(
        exit_code=1,
        stdout="Error: 503 Service Unavailable",
        stderr="",
    )
    assert classified.outcome == OutcomeClass.TRANSIENT_INFRA
    assert classified.matched_rule == "server_error"


def test_nonzero_exit_and_empty_output_are_transient() -> None:
    classifier = TextPatternClassifier()

    crashed = classifier.classify(exit_code=2, stdout="segfault in tool", stderr="")
    silent = classifier.classify(exit_code=0, stdout="   \n", stderr="")

    assert crashed.outcome == OutcomeClass.TRANSIENT_INFRA
    assert crashed.reason_code == "nonzero_exit"
    assert silent.outcome == OutcomeClass.TRANSIENT_INFRA
    assert silent.reason_code == "empty_output"


def test_window_keeps_head_and_tail() -> None:
    classifier = TextPatternClassifier(head_lines=2, tail_lines=1)

    assert classifier.window("a\nb\nc\nd\ne") == "a\nb\ne"
    assert classifier.window("a\nb") == "a\nb"


def test_parse_envelope_reads_last_block() -> None:
    envelope = parse_envelope(
        '<result>{"checked": [9]}</result>\n'
        "more output\n"
        '<result>{"checked": [0, 2, 0], "done": true, '
        '"blocked": {"kind": "decision", "detail": "pick a db", "blockedBy": ["US-002"]}}'
        "</result>",
    )

    assert envelope is not None
    assert envelope.status is None
    assert envelope.checked == (0, 2)
    assert envelope.done is True
    assert envelope.blocked is not None
    assert envelope.blocked.kind == BlockKind.DECISION
    assert envelope.blocked_by == ("US-002",)


def test_malformed_envelope_is_ignored() -> None:
    assert parse_envelope("<result>{not json}</result>") is None
    assert parse_envelope('<result>{"checked": "all"}</result>') is None
    assert parse_envelope("no footer at all") is None


def test_envelope_status_overrides_text_patterns() -> None:
    classifier = build_classifier(ClassifierSettings())

    classified = classifier.classify(
        exit_code=0,
        stdout='working\n<result>{"status": "no_response"}</result>',
        stderr="",
    )

    assert classified.outcome == OutcomeClass.NO_RESPONSE
    assert classified.matched_rule == "result_envelope"


def test_envelope_without_status_rides_on_fallback() -> None:
    classifier = build_classifier(ClassifierSettings())

    classified = classifier.classify(
        exit_code=0,
        stdout=f'<result>{{"checked": [1]}}</result>\n{COMPLETE_SENTINEL}',
        stderr="",
    )

    assert classified.outcome == OutcomeClass.SIGNAL_COMPLETE
    assert classified.envelope is not None
    assert classified.envelope.checked == (1,)


def test_envelope_cannot_override_cancellation() -> None:
    classifier = build_classifier(ClassifierSettings())

    classified = classifier.classify(
        exit_code=130,
        stdout='<result>{"status": "complete"}</result>',
        stderr="",
    )

    assert classified.outcome == OutcomeClass.USER_CANCELLED


def test_extract_failure_reason_prefers_blocked_marker() -> None:
    assert extract_failure_reason("Error: boom\nBLOCKED: needs design") == "BLOCKED: needs design"
    assert extract_failure_reason("x\nError: tests failed\n") == "Error: tests failed"
    assert extract_failure_reason("all good") == NO_COMPLETION_REASON
