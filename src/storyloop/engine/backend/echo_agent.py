"""Local demo executor for CLI backend integration tests."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from pathlib import Path

from storyloop.engine.classifier import ALL_BLOCKED_SENTINEL, COMPLETE_SENTINEL

_CRITERION_LINE = re.compile(r"^(\d+)\. \[( |x)\] ")
MODES = ("progress", "complete", "all_blocked", "no_response", "transient", "blocked")


def main(argv: list[str] | None = None) -> int:
    """Answer an instruction payload deterministically according to `--mode`."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--mode", choices=MODES, default="progress")
    parser.add_argument(
        "--fail-label",
        action="append",
        default=[],
        help="Agent label that answers without a completion signal.",
    )
    args = parser.parse_args(argv)

    instructions = Path(args.prompt_file).read_text("utf-8")
    label = os.getenv("STORYLOOP_AGENT_LABEL", "main")
    job_id = os.getenv("STORYLOOP_JOB_ID", "unknown")
    print(f"echo agent working on {job_id} ({label})")

    if label in args.fail_label:
        print("BLOCKED: echo agent was told to fail this focus")
        return 0
    if args.mode == "no_response":
        print("Error: No messages returned")
        return 1
    if args.mode == "transient":
        print("Error: 503 Service Unavailable", file=sys.stderr)
        return 1
    if args.mode == "blocked":
        envelope = {"blocked": {"kind": "decision", "detail": "needs product input"}}
        print(f"<result>{json.dumps(envelope)}</result>")
        return 0

    unchecked = [
        int(match.group(1))
        for match in map(_CRITERION_LINE.match, instructions.splitlines())
        if match is not None and match.group(2) == " "
    ]
    print(f"<result>{json.dumps({'checked': unchecked})}</result>")
    if args.mode == "complete":
        print(COMPLETE_SENTINEL)
    elif args.mode == "all_blocked":
        print(ALL_BLOCKED_SENTINEL)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
