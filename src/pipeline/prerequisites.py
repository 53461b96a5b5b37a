# src/pipeline/prerequisites.py — v1
"""Step prerequisite table and validation.

The table is a frozen networkx DiGraph (edge ``prerequisite -> step``),
built once at import time and checked to be acyclic. ``import`` is a family
node standing for whichever import variant the job uses.
"""

from __future__ import annotations

import logging

import networkx as nx

from aether.config.models import IMPORT_ALIAS, IMPORT_STEPS, PROCESSING_STEPS
from aether.core.models import PipelineJob, PipelineStep

logger = logging.getLogger(__name__)


class PrerequisiteTableError(Exception):
    """Raised when the prerequisite table is malformed (cycle)."""


def _build_table() -> nx.DiGraph:
    graph = nx.DiGraph()
    graph.add_node(IMPORT_ALIAS)
    for step in IMPORT_STEPS:
        graph.add_node(step)
    for step in PROCESSING_STEPS:
        graph.add_edge(IMPORT_ALIAS, step)
    if not nx.is_directed_acyclic_graph(graph):
        raise PrerequisiteTableError(
            f"prerequisite table has a cycle: {nx.find_cycle(graph)}"
        )
    return nx.freeze(graph)


PREREQUISITES: nx.DiGraph = _build_table()


def get_step_dependencies(step_name: str) -> list[str]:
    """Direct prerequisites of ``step_name``; unknown names have none."""
    if step_name not in PREREQUISITES:
        return []
    return list(PREREQUISITES.predecessors(step_name))


def _resolve(job: PipelineJob, prerequisite: str) -> PipelineStep | None:
    if prerequisite == IMPORT_ALIAS:
        return job.import_step()
    return job.get_step(prerequisite)


def validate(job: PipelineJob, step_name: str) -> tuple[str | None, bool]:
    """Check whether ``step_name`` may run for ``job``.

    A prerequisite that is not part of the job counts as satisfied. One
    that is part of the job blocks unless it is completed (a skipped
    prerequisite blocks too).

    Returns:
        (blocking_step, can_run): the job's name for the first unmet
        prerequisite in table order, or (None, True).
    """
    for prerequisite in get_step_dependencies(step_name):
        step = _resolve(job, prerequisite)
        if step is None:
            continue
        if step.status != "completed":
            logger.debug(
                "%s blocked by %s (status %s)", step_name, step.name, step.status
            )
            return step.name, False
    return None, True
