"""Dependency resolver: auto-block and auto-unblock passes over the queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter

from storyloop.engine.store import JobStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResolutionReport:
    """What one resolver pass changed."""

    promoted: list[str] = field(default_factory=list)
    demoted: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.promoted or self.demoted)


def resolve_dependencies(store: JobStore) -> ResolutionReport:
    """Run one idempotent pass.

    Pending jobs with an unfinished blocker are demoted to `blocked`. Blocked
    jobs whose blockers all pass are promoted to the tail of `pending` in
    topological order, with `blockedBy` cleared. Blocked jobs without job
    blockers wait for a manual or inbox-driven move.
    """

    report = ResolutionReport()

    for job_id in store.index.pending:
        job = store.get(job_id)
        unmet = [blocker for blocker in job.blocked_by if not store.get(blocker).passes]
        if unmet and store.demote(job_id):
            report.demoted.append(job_id)
            logger.info("Auto-blocked %s: waiting on %s", job_id, ", ".join(unmet))

    graph: dict[str, list[str]] = {}
    index = store.index
    for job_id in index.story_order:
        job = store.get(job_id)
        if not job.passes and job.blocked_by:
            graph[job_id] = list(job.blocked_by)

    order, report.cycles = _topological_order(graph)
    for cycle in report.cycles:
        logger.warning("Dependency cycle keeps jobs blocked: %s", " -> ".join(cycle))

    blocked = set(index.blocked)
    for job_id in order:
        if job_id not in blocked:
            continue
        job = store.get(job_id)
        if job.blocked_by and all(store.get(blocker).passes for blocker in job.blocked_by):
            resolved = list(job.blocked_by)
            store.promote(job_id)
            report.promoted.append(job_id)
            logger.info("Auto-unblocked %s: %s complete", job_id, ", ".join(resolved))

    return report


def _topological_order(graph: dict[str, list[str]]) -> tuple[list[str], list[list[str]]]:
    """Blockers-first order of `graph`, skipping nodes that sit on a cycle."""

    remaining = dict(graph)
    cycles: list[list[str]] = []
    while True:
        sorter = TopologicalSorter(remaining)
        try:
            return list(sorter.static_order()), cycles
        except CycleError as error:
            cycle = list(error.args[1])
            cycles.append(cycle)
            for node in cycle:
                remaining.pop(node, None)
            remaining = {
                node: [dep for dep in deps if dep not in cycle]
                for node, deps in remaining.items()
            }
