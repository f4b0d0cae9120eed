"""
Wave Scheduler for the Execution Engine.

Compiles a workflow's dependency relation into an ordered list of waves.
Every node in wave k has all of its dependencies in waves < k, and each
wave is the maximal set of nodes that became ready after the previous
one. Nodes inside a wave may run in parallel.
"""

from typing import Dict, List, Optional, Sequence, Set
from dataclasses import dataclass, field
from collections import Counter

from dagflow.engine.models import NodeDefinition, Workflow
from dagflow.errors import GraphCycleError, ValidationFailedError


@dataclass
class DependencyGraph:
    """
    Adjacency arena keyed by node id.

    Attributes:
        order: Node ids in declaration order
        dependencies: node_id -> ids it depends on
        dependents: node_id -> ids that depend on it
        in_degree: node_id -> number of dependencies
    """
    order: List[str] = field(default_factory=list)
    dependencies: Dict[str, Set[str]] = field(default_factory=dict)
    dependents: Dict[str, Set[str]] = field(default_factory=dict)
    in_degree: Dict[str, int] = field(default_factory=dict)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.dependencies

    def __len__(self) -> int:
        return len(self.order)


def build_dependency_graph(nodes: Sequence[NodeDefinition]) -> DependencyGraph:
    """
    Build the adjacency arena for a node list.

    Raises:
        ValidationFailedError: On duplicate ids or unknown dependencies
    """
    graph = DependencyGraph()

    duplicates = [node_id for node_id, count in Counter(n.id for n in nodes).items() if count > 1]
    if duplicates:
        raise ValidationFailedError(
            f"Duplicate node ids: {sorted(duplicates)}",
            {"node_ids": sorted(duplicates)},
        )

    for n in nodes:
        graph.order.append(n.id)
        graph.dependencies[n.id] = set()
        graph.dependents[n.id] = set()

    for n in nodes:
        for dep in n.depends_on:
            if dep not in graph.dependencies:
                raise ValidationFailedError(
                    f"Node '{n.id}' depends on unknown node '{dep}'",
                    {"node_id": n.id, "dependency": dep},
                )
            graph.dependencies[n.id].add(dep)
            graph.dependents[dep].add(n.id)

    graph.in_degree = {node_id: len(deps) for node_id, deps in graph.dependencies.items()}
    return graph


def compute_waves(graph: DependencyGraph) -> List[List[str]]:
    """
    Greedy topological layering.

    Each pass collects every remaining node whose in-degree has dropped
    to zero, then decrements the in-degree of their dependents.

    Raises:
        GraphCycleError: If nodes remain but none can be scheduled
    """
    remaining = dict(graph.in_degree)
    waves: List[List[str]] = []

    while remaining:
        wave = [node_id for node_id in graph.order if remaining.get(node_id) == 0]
        if not wave:
            raise GraphCycleError(remaining.keys())

        for node_id in wave:
            del remaining[node_id]
            for dependent in graph.dependents[node_id]:
                remaining[dependent] -= 1

        waves.append(wave)

    return waves


def validate_workflow(workflow: Workflow) -> None:
    """
    Validate a workflow's structure.

    Raises:
        ValidationFailedError: Empty workflow, duplicate ids, unknown dependencies
        GraphCycleError: If the dependency relation has a cycle
    """
    if not workflow.nodes:
        raise ValidationFailedError(
            f"Workflow '{workflow.id}' must have at least one node",
            {"workflow_id": workflow.id},
        )
    compute_waves(build_dependency_graph(workflow.nodes))


@dataclass
class WavePlan:
    """The wave partition of a workflow plus graph queries the engine needs."""
    workflow_id: str
    graph: DependencyGraph
    waves: List[List[str]]

    def wave_of(self, node_id: str) -> Optional[int]:
        for index, wave in enumerate(self.waves):
            if node_id in wave:
                return index
        return None

    def ancestors(self, node_id: str) -> Set[str]:
        """All nodes the given node transitively depends on."""
        return self._walk(node_id, self.graph.dependencies)

    def descendants(self, node_id: str) -> Set[str]:
        """All nodes that transitively depend on the given node."""
        return self._walk(node_id, self.graph.dependents)

    @staticmethod
    def _walk(start: str, edges: Dict[str, Set[str]]) -> Set[str]:
        seen: Set[str] = set()
        to_visit = list(edges.get(start, ()))
        while to_visit:
            node_id = to_visit.pop()
            if node_id in seen:
                continue
            seen.add(node_id)
            to_visit.extend(edges.get(node_id, ()))
        return seen

    @property
    def max_parallelism(self) -> int:
        return max((len(w) for w in self.waves), default=0)

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram with one subgraph per wave."""
        lines = ["graph TD"]

        for index, wave in enumerate(self.waves):
            lines.append(f'    subgraph wave_{index}["Wave {index}"]')
            for node_id in wave:
                lines.append(f'        {node_id}["{node_id}"]')
            lines.append("    end")

        for node_id in self.graph.order:
            for dep in sorted(self.graph.dependencies[node_id]):
                lines.append(f"    {dep} --> {node_id}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, object]:
        return {
            "workflow_id": self.workflow_id,
            "waves": [list(w) for w in self.waves],
            "depth": len(self.waves),
            "max_parallelism": self.max_parallelism,
        }


def build_wave_plan(workflow: Workflow) -> WavePlan:
    """
    Compile a workflow into its wave plan.

    Raises:
        ValidationFailedError: On structural errors
        GraphCycleError: If the dependency relation has a cycle
    """
    graph = build_dependency_graph(workflow.nodes)
    return WavePlan(
        workflow_id=workflow.id,
        graph=graph,
        waves=compute_waves(graph),
    )
