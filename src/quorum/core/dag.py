# src/quorum/core/dag.py
"""DAG (Directed Acyclic Graph) operations for pipeline execution planning.

Uses NetworkX for graph operations including:
- Acyclicity validation with the offending cycle named
- Topological sorting
- Transitive dependent lookup for failure propagation
"""

from __future__ import annotations

from collections.abc import Iterable

import networkx as nx
from networkx import DiGraph

from quorum.contracts.errors import CyclicPipeline, ValidationError
from quorum.contracts.pipeline import PipelineDefinition


class PipelineGraph:
    """Dependency graph of a pipeline definition.

    Edges point from a dependency to its dependent, so a topological
    order is an execution order.
    """

    def __init__(self) -> None:
        self._graph: DiGraph[str] = nx.DiGraph()
        self._order: dict[str, int] = {}

    @classmethod
    def from_steps(cls, steps: Iterable[tuple[str, Iterable[str]]]) -> PipelineGraph:
        """Build a graph from ``(step_id, depends_on)`` pairs.

        Raises:
            ValidationError: If a dependency names an unknown step
        """
        graph = cls()
        pairs = [(step_id, list(deps)) for step_id, deps in steps]
        for step_id, _ in pairs:
            graph.add_step(step_id)
        for step_id, deps in pairs:
            for dep in deps:
                if not graph.has_step(dep):
                    raise ValidationError(
                        f"Step '{step_id}' depends on unknown step '{dep}'"
                    )
                graph.add_dependency(step_id, dep)
        return graph

    @classmethod
    def from_definition(cls, definition: PipelineDefinition) -> PipelineGraph:
        return cls.from_steps((step.id, step.depends_on) for step in definition.steps)

    @property
    def step_count(self) -> int:
        return self._graph.number_of_nodes()

    def has_step(self, step_id: str) -> bool:
        return self._graph.has_node(step_id)

    def add_step(self, step_id: str) -> None:
        if step_id not in self._order:
            self._order[step_id] = len(self._order)
        self._graph.add_node(step_id)

    def add_dependency(self, step_id: str, depends_on: str) -> None:
        self._graph.add_edge(depends_on, step_id)

    def is_acyclic(self) -> bool:
        """Check if the graph is acyclic (a valid DAG)."""
        return nx.is_directed_acyclic_graph(self._graph)

    def validate(self) -> None:
        """Reject the graph if it contains a dependency cycle.

        Raises:
            CyclicPipeline: Naming the steps on the first cycle found
        """
        if self.is_acyclic():
            return
        try:
            # depth-first; a back edge to a node on the stack closes the cycle
            edges = nx.find_cycle(self._graph, orientation="original")
        except nx.NetworkXNoCycle:
            raise CyclicPipeline([]) from None
        raise CyclicPipeline([u for u, _v, *_ in edges])

    def topological_order(self) -> list[str]:
        """Return steps in an execution order, ties broken by definition order.

        Raises:
            CyclicPipeline: If the graph has cycles
        """
        self.validate()
        return list(
            nx.lexicographical_topological_sort(self._graph, key=self._order.__getitem__)
        )

    def dependencies(self, step_id: str) -> set[str]:
        """Direct dependencies of a step."""
        return set(self._graph.predecessors(step_id))

    def dependents(self, step_id: str) -> set[str]:
        """Transitive dependents of a step."""
        return set(nx.descendants(self._graph, step_id))
