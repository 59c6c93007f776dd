"""Autonomous story execution loop."""

__version__ = "0.1.0"
