"""
Ordering of plan steps.

Steps are pre-sorted by layer and then emitted depth-first so every
dependency lands before its dependents. Cycles never abort scheduling:
`break_cycles` drops the back-edges and reports them, and the risk
engine reports the cycle from the steps' untouched declared
dependencies.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Set, Tuple

from ..domain import Step

LOG = logging.getLogger(__name__)

LAYER_PRIORITY: Dict[str, int] = {
    "database": 1,
    "backend": 2,
    "frontend": 3,
    "general": 4,
    "test": 5,
}
_UNKNOWN_LAYER = 999

Edge = Tuple[str, str]


def layer_sorted(steps: Sequence[Step]) -> List[Step]:
    # sorted() is stable, so ties keep their input order.
    return sorted(steps, key=lambda s: LAYER_PRIORITY.get(s.layer, _UNKNOWN_LAYER))


def break_cycles(steps: Sequence[Step]) -> Tuple[Dict[str, List[str]], List[Edge]]:
    """
    Return an acyclic dependency map plus the edges dropped to get it.

    The graph is walked depth-first from each step in layer order. An
    edge whose target is still on the current recursion path closes a
    cycle and is dropped. Dependencies on unknown step ids are left out
    of the map without being reported as dropped.
    """

    by_id = {s.id: s for s in steps}
    acyclic: Dict[str, List[str]] = {s.id: [] for s in steps}
    dropped: List[Edge] = []
    visited: Set[str] = set()
    on_path: Set[str] = set()

    def visit(step_id: str) -> None:
        on_path.add(step_id)
        for dep in by_id[step_id].dependencies:
            if dep not in by_id:
                continue
            if dep in on_path:
                dropped.append((step_id, dep))
                continue
            acyclic[step_id].append(dep)
            if dep not in visited:
                visit(dep)
        on_path.discard(step_id)
        visited.add(step_id)

    for step in layer_sorted(steps):
        if step.id not in visited:
            visit(step.id)

    if dropped:
        LOG.warning(
            "Dropped %d dependency edge(s) to break cycles: %s",
            len(dropped),
            ", ".join(f"{a} -> {b}" for a, b in dropped),
        )
    return acyclic, dropped


def order_steps(steps: Sequence[Step]) -> List[Step]:
    """
    Return the same step objects in execution order.

    Every input step appears exactly once in the output.
    """

    by_id = {s.id: s for s in steps}
    if len(by_id) != len(steps):
        raise ValueError("step ids must be unique")

    graph, _ = break_cycles(steps)
    ordered: List[Step] = []
    emitted: Set[str] = set()

    def emit(step_id: str) -> None:
        if step_id in emitted:
            return
        emitted.add(step_id)
        for dep in graph[step_id]:
            emit(dep)
        ordered.append(by_id[step_id])

    for step in layer_sorted(steps):
        emit(step.id)

    return ordered


def find_cycles(steps: Sequence[Step]) -> List[str]:
    """
    Find circular dependency chains, rendered as ``a -> b -> a``.

    Every path is followed from every step, so one cycle is reported
    once per member it can be entered from.
    """

    by_id = {s.id: s for s in steps}
    chains: List[str] = []
    seen: Set[str] = set()

    def visit(step_id: str, path: List[str]) -> None:
        if step_id in path:
            chain = " -> ".join(path + [step_id])
            if chain not in seen:
                seen.add(chain)
                chains.append(chain)
            return
        step = by_id.get(step_id)
        if step is None:
            return
        for dep in step.dependencies:
            visit(dep, path + [step_id])

    for step in steps:
        visit(step.id, [])

    return chains


def find_missing_dependencies(steps: Sequence[Step]) -> List[Edge]:
    """
    Return ``(step_id, missing_dependency_id)`` pairs.
    """

    known = {s.id for s in steps}
    return [(s.id, dep) for s in steps for dep in s.dependencies if dep not in known]
