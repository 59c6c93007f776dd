"""Execution engine: job store, scheduler and executor dispatch."""
