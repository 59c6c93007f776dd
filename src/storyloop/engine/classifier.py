"""Deterministic outcome classification of one executor run."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from storyloop.config import ClassifierSettings
from storyloop.engine.contracts import parse_block_reason, parse_blocked_by
from storyloop.engine.models import BlockReason, OutcomeClass

logger = logging.getLogger(__name__)

OUTCOME_CLASSIFIER_VERSION = 1
CANCELLED_EXIT_CODE = 130
COMPLETE_SENTINEL = "<promise>COMPLETE</promise>"
ALL_BLOCKED_SENTINEL = "<promise>ALL_BLOCKED</promise>"
NO_COMPLETION_REASON = "No completion promise found"

_NO_RESPONSE_PATTERNS: tuple[str, ...] = (
    r"No messages returned",
    r"no response (?:was )?received",
    r"empty response",
)
_CONNECTION_PATTERNS: tuple[str, ...] = (
    r"ECONNRESET",
    r"EAGAIN",
    r"fetch failed",
    r"ETIMEDOUT",
    r"socket hang up",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"rate limit",
    r"overloaded",
    r"too many requests",
    r"\b429\b",
)
_SERVER_ERROR_PATTERNS: tuple[str, ...] = (
    r"Error: 5\d\d",
    r"HTTP.*\b5\d\d\b",
    r"service unavailable",
)
_ENVELOPE_PATTERN = re.compile(r"<result>\s*(\{.*?\})\s*</result>", re.DOTALL)
_BLOCKED_REASON_PATTERN = re.compile(r"BLOCKED:.*")
_ERROR_REASON_PATTERN = re.compile(r"Error:.*")
_ENVELOPE_STATUSES: dict[str, OutcomeClass] = {
    "success": OutcomeClass.SUCCESS,
    "continue": OutcomeClass.SUCCESS,
    "complete": OutcomeClass.SIGNAL_COMPLETE,
    "all_blocked": OutcomeClass.SIGNAL_ALL_BLOCKED,
    "no_response": OutcomeClass.NO_RESPONSE,
    "transient": OutcomeClass.TRANSIENT_INFRA,
}


@dataclass(slots=True)
class ResultEnvelope:
    """Structured JSON footer an executor may print as `<result>{...}</result>`."""

    status: OutcomeClass | None = None
    checked: tuple[int, ...] = ()
    done: bool = False
    blocked: BlockReason | None = None
    blocked_by: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Classification:
    """Normalized classification result."""

    outcome: OutcomeClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None
    envelope: ResultEnvelope | None = None

    @property
    def is_failure(self) -> bool:
        return self.outcome in {OutcomeClass.NO_RESPONSE, OutcomeClass.TRANSIENT_INFRA}

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for incident records."""

        return {
            "classifier_version": OUTCOME_CLASSIFIER_VERSION,
            "outcome": self.outcome.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "envelope": self.envelope is not None,
        }


class OutcomeClassifier(Protocol):
    """Protocol implemented by classifiers."""

    def classify(self, *, exit_code: int, stdout: str, stderr: str) -> Classification:
        """Assign one outcome class to a finished executor run."""


class TextPatternClassifier:
    """Regex classifier over raw output.

    Sentinels are matched anywhere in stdout. Error patterns are only matched
    within the first `head_lines` and last `tail_lines` lines, so narrative
    output that mentions an error word does not turn a good run into a retry.
    """

    def __init__(self, *, head_lines: int = 5, tail_lines: int = 10) -> None:
        self.head_lines = head_lines
        self.tail_lines = tail_lines

    def classify(self, *, exit_code: int, stdout: str, stderr: str) -> Classification:
        if exit_code == CANCELLED_EXIT_CODE:
            return Classification(
                outcome=OutcomeClass.USER_CANCELLED,
                reason_code="user_cancelled",
                matched_rule="exit_code_130",
            )
        if COMPLETE_SENTINEL in stdout:
            return Classification(
                outcome=OutcomeClass.SIGNAL_COMPLETE,
                reason_code="signal_complete",
                matched_rule="complete_sentinel",
                matched_pattern=COMPLETE_SENTINEL,
            )
        if ALL_BLOCKED_SENTINEL in stdout:
            return Classification(
                outcome=OutcomeClass.SIGNAL_ALL_BLOCKED,
                reason_code="signal_all_blocked",
                matched_rule="all_blocked_sentinel",
                matched_pattern=ALL_BLOCKED_SENTINEL,
            )

        haystack = "\n".join(
            (self.window(stdout), self.window(stderr)),
        )
        pattern = _first_match(haystack, _NO_RESPONSE_PATTERNS)
        if pattern is not None:
            return Classification(
                outcome=OutcomeClass.NO_RESPONSE,
                reason_code="no_response",
                matched_rule="no_response",
                matched_pattern=pattern,
            )
        for rule, patterns in (
            ("connection", _CONNECTION_PATTERNS),
            ("rate_limit", _RATE_LIMIT_PATTERNS),
            ("server_error", _SERVER_ERROR_PATTERNS),
        ):
            pattern = _first_match(haystack, patterns)
            if pattern is not None:
                return Classification(
                    outcome=OutcomeClass.TRANSIENT_INFRA,
                    reason_code=f"{rule}_transient",
                    matched_rule=rule,
                    matched_pattern=pattern,
                )

        if exit_code != 0:
            return Classification(
                outcome=OutcomeClass.TRANSIENT_INFRA,
                reason_code="nonzero_exit",
                matched_rule="nonzero_exit",
                matched_pattern=str(exit_code),
            )
        if not stdout.strip():
            return Classification(
                outcome=OutcomeClass.TRANSIENT_INFRA,
                reason_code="empty_output",
                matched_rule="empty_output",
            )
        return Classification(
            outcome=OutcomeClass.SUCCESS,
            reason_code="success",
            matched_rule="fallback_success",
        )

    def window(self, text: str) -> str:
        """First `head_lines` plus last `tail_lines` lines of `text`."""

        lines = text.splitlines()
        if len(lines) <= self.head_lines + self.tail_lines:
            return "\n".join(lines)
        tail = lines[-self.tail_lines :] if self.tail_lines else []
        return "\n".join([*lines[: self.head_lines], *tail])


class EnvelopeClassifier:
    """Prefer a structured result envelope, falling back to text patterns."""

    def __init__(self, fallback: OutcomeClassifier) -> None:
        self.fallback = fallback

    def classify(self, *, exit_code: int, stdout: str, stderr: str) -> Classification:
        fallback = self.fallback.classify(exit_code=exit_code, stdout=stdout, stderr=stderr)
        if fallback.outcome == OutcomeClass.USER_CANCELLED:
            return fallback
        envelope = parse_envelope(stdout)
        if envelope is None:
            return fallback
        if envelope.status is None:
            fallback.envelope = envelope
            return fallback
        return Classification(
            outcome=envelope.status,
            reason_code=f"envelope_{envelope.status.value}",
            matched_rule="result_envelope",
            envelope=envelope,
        )


def build_classifier(settings: ClassifierSettings) -> OutcomeClassifier:
    """Envelope-first classifier with the text-pattern fallback."""

    return EnvelopeClassifier(
        TextPatternClassifier(head_lines=settings.head_lines, tail_lines=settings.tail_lines),
    )


def parse_envelope(stdout: str) -> ResultEnvelope | None:
    """Parse the last result envelope in stdout; malformed envelopes are ignored."""

    matches = _ENVELOPE_PATTERN.findall(stdout)
    if not matches:
        return None
    try:
        payload = json.loads(matches[-1])
        if not isinstance(payload, dict):
            raise TypeError("envelope must be an object")
        return _envelope_from_payload(payload)
    except (json.JSONDecodeError, TypeError, ValueError) as error:
        logger.debug("Ignoring malformed result envelope: %s", error)
        return None


def _envelope_from_payload(payload: dict[str, Any]) -> ResultEnvelope:
    status_raw = payload.get("status")
    status: OutcomeClass | None = None
    if status_raw is not None:
        if not isinstance(status_raw, str) or status_raw.lower() not in _ENVELOPE_STATUSES:
            raise ValueError(f"unsupported envelope status {status_raw!r}")
        status = _ENVELOPE_STATUSES[status_raw.lower()]

    checked = payload.get("checked", [])
    if not isinstance(checked, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in checked
    ):
        raise TypeError("checked must be a list of criterion indices")

    blocked = payload.get("blocked")
    blocked_by: list[str] = []
    reason: BlockReason | None = None
    if isinstance(blocked, dict):
        blocked_by = parse_blocked_by(blocked.get("blockedBy"))
        reason = parse_block_reason(
            {"kind": blocked.get("kind", "external"), "detail": blocked.get("detail", "")},
        )
    elif blocked is not None:
        reason = parse_block_reason(blocked)

    done = payload.get("done", False)
    if not isinstance(done, bool):
        raise TypeError("done must be a boolean")
    return ResultEnvelope(
        status=status,
        checked=tuple(dict.fromkeys(checked)),
        done=done,
        blocked=reason,
        blocked_by=tuple(blocked_by),
        raw=payload,
    )


def extract_failure_reason(stdout: str) -> str:
    """Short reason for a run that did not signal completion."""

    for pattern in (_BLOCKED_REASON_PATTERN, _ERROR_REASON_PATTERN):
        match = pattern.search(stdout)
        if match is not None:
            return match.group(0).strip()
    return NO_COMPLETION_REASON


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack, re.IGNORECASE):
            return pattern
    return None
