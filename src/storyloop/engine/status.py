"""Status file consumed by external progress displays."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from storyloop.engine.contracts import load_json, write_json
from storyloop.engine.models import utc_now


class StatusFile:
    """Atomically rewritten `status.json` describing the running loop."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._state: dict[str, Any] = {}

    def start(self) -> None:
        now = utc_now().isoformat(timespec="seconds")
        self._state = {
            "state": "starting",
            "iteration": 0,
            "jobId": None,
            "model": None,
            "startTime": now,
            "lastActivity": now,
            "error": None,
            "retryIn": None,
            "pid": os.getpid(),
        }
        write_json(self.path, self._state)

    def update(self, state: str, **fields: Any) -> None:
        self._state.update(fields)
        self._state["state"] = state
        self._state["lastActivity"] = utc_now().isoformat(timespec="seconds")
        if state != "retry":
            self._state["retryIn"] = fields.get("retryIn")
        write_json(self.path, self._state)


def read_status(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        return load_json(path)
    except (OSError, json.JSONDecodeError, TypeError):
        return None
