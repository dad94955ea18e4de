"""Generic dependency graph abstraction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from ._algorithms import find_cycle, topological_sort

if TYPE_CHECKING:
    from collections.abc import Iterable

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class DependencyGraph(Generic[T]):
    """A directed graph of "must happen before" relationships.

    This is a pure, immutable data structure with query methods. Nodes keep
    the order in which they were first seen, which keeps topological orders
    deterministic.

    - predecessors[b] = (a,) means "b depends on a"
    - successors[a] = (b,) means "a is depended on by b"

    Attributes:
        _predecessors: Mapping from node to its direct dependencies.
        _successors: Mapping from node to nodes that depend on it.

    """

    _predecessors: dict[T, tuple[T, ...]] = field(default_factory=dict)
    _successors: dict[T, tuple[T, ...]] = field(default_factory=dict)

    @classmethod
    def from_edges(cls, edges: Iterable[tuple[T, T]], nodes: Iterable[T] = ()) -> DependencyGraph[T]:
        """Build a graph from (source, target) edges.

        An edge (a, b) means "b depends on a". ``nodes`` adds nodes that may
        have no edges at all; duplicated edges are collapsed.

        Example:
            >>> graph = DependencyGraph.from_edges([("a", "b"), ("b", "c")])
            >>> graph.predecessors("b")
            ('a',)

        """
        predecessors: dict[T, dict[T, None]] = {}
        successors: dict[T, dict[T, None]] = {}

        for node in nodes:
            predecessors.setdefault(node, {})
            successors.setdefault(node, {})

        for src, dst in edges:
            predecessors.setdefault(src, {})
            successors.setdefault(src, {})[dst] = None
            predecessors.setdefault(dst, {})[src] = None
            successors.setdefault(dst, {})

        return cls(
            _predecessors={k: tuple(v) for k, v in predecessors.items()},
            _successors={k: tuple(v) for k, v in successors.items()},
        )

    @property
    def nodes(self) -> tuple[T, ...]:
        """All nodes in insertion order."""
        return tuple(self._successors)

    def predecessors(self, node: T) -> tuple[T, ...]:
        """Get direct dependencies of a node."""
        return self._predecessors.get(node, ())

    def successors(self, node: T) -> tuple[T, ...]:
        """Get direct dependents of a node."""
        return self._successors.get(node, ())

    def ancestors(self, node: T) -> frozenset[T]:
        """Get all transitive dependencies of a node."""
        visited: set[T] = set()
        stack = list(self.predecessors(node))
        while stack:
            current = stack.pop()
            if current not in visited:
                visited.add(current)
                stack.extend(self.predecessors(current))
        return frozenset(visited)

    def topological_order(self) -> list[T]:
        """Return nodes in topological order (dependencies before dependents).

        Raises:
            ValueError: If the graph contains a cycle.

        """
        return topological_sort(self._successors)

    def find_cycle(self) -> list[T] | None:
        """Return one cycle as a closed node path, or None if the graph is acyclic."""
        return find_cycle(self._successors)

    def is_order_consistent(self, order: Iterable[T]) -> bool:
        """Check that ``order`` lists every node after all of its predecessors.

        Nodes of the graph that are missing from ``order`` make it inconsistent.
        """
        position: dict[T, int] = {}
        for index, node in enumerate(order):
            position.setdefault(node, index)
        if any(node not in position for node in self._successors):
            return False
        return all(
            position[pred] < position[node] for node in self._predecessors for pred in self._predecessors[node]
        )

    def __len__(self) -> int:
        """Return the number of nodes in the graph."""
        return len(self._successors)

    def __contains__(self, node: object) -> bool:
        """Check if a node exists in the graph."""
        return node in self._successors
