"""Dependency graph built from manifests, and Kahn layering into load batches."""

import logging
from dataclasses import dataclass, field
from enum import Enum

from fynmesh.errors import DependencyCycleError

logger = logging.getLogger(__name__)


class CyclePolicy(Enum):
    FAIL = "fail"
    BEST_EFFORT = "best_effort"

    @classmethod
    def parse(cls, value: "str | CyclePolicy") -> "CyclePolicy":
        if isinstance(value, CyclePolicy):
            return value
        return cls(str(value).replace("-", "_").lower())


@dataclass
class DependencyGraph:
    """Edges point from a dependency to its dependents; indegree counts unresolved deps.

    Dicts keep insertion order so batches come out in visit order.
    """

    nodes: dict[str, None] = field(default_factory=dict)
    adj: dict[str, set[str]] = field(default_factory=dict)
    indegree: dict[str, int] = field(default_factory=dict)

    def add_node(self, key: str) -> bool:
        """Insert key. Returns True if it was new."""
        if key in self.nodes:
            return False
        self.nodes[key] = None
        self.indegree.setdefault(key, 0)
        return True

    def add_edge(self, dependency: str, dependent: str) -> bool:
        """Record dependent -> needs -> dependency once. Returns True if the edge was new."""
        dependents = self.adj.setdefault(dependency, set())
        if dependent in dependents:
            return False
        dependents.add(dependent)
        self.indegree[dependent] = self.indegree.get(dependent, 0) + 1
        return True

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, key: object) -> bool:
        return key in self.nodes


def topo_batches(
    graph: DependencyGraph, on_cycle: CyclePolicy = CyclePolicy.FAIL
) -> list[list[str]]:
    """Drain indegree-0 nodes layer by layer. Each batch is safe to load in parallel."""
    indegree = dict(graph.indegree)
    queue = [n for n in graph.nodes if indegree.get(n, 0) == 0]
    batches: list[list[str]] = []
    ordered = 0

    while queue:
        batch, queue = queue, []
        batches.append(batch)
        ordered += len(batch)
        for node in batch:
            for dependent in sorted(graph.adj.get(node, ())):
                indegree[dependent] = indegree.get(dependent, 0) - 1
                if indegree[dependent] == 0:
                    queue.append(dependent)

    if ordered < len(graph.nodes):
        stuck = [n for n in graph.nodes if indegree.get(n, 0) > 0]
        if on_cycle is CyclePolicy.FAIL:
            raise DependencyCycleError(stuck)
        logger.warning(
            "Dependency cycle among %s; loading them as a final best-effort batch",
            ", ".join(stuck),
        )
        batches.append(stuck)

    return batches
