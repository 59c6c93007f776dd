"""Executor backends."""

from storyloop.engine.backend.base import Executor, ExecutorRequest, ExecutorResult
from storyloop.engine.backend.cli_backend import CliExecutor

__all__ = [
    "CliExecutor",
    "Executor",
    "ExecutorRequest",
    "ExecutorResult",
]
