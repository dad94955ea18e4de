"""Graph algorithms for dependency graph operations."""

from collections import deque
from collections.abc import Collection, Hashable, Mapping
from typing import TypeVar

T = TypeVar("T", bound=Hashable)


def topological_sort(successors: Mapping[T, Collection[T]]) -> list[T]:
    """Sort a graph topologically (dependencies before dependents).

    The sort is stable: among nodes that are ready at the same time, the one
    that appears first in ``successors`` (or was first reached as a successor)
    comes first. Partitioned graphs rely on this to keep their original order.

    Args:
        successors: Mapping from node to collection of nodes that depend on it.
            An edge (a -> b) means "b depends on a".

    Returns:
        List of nodes in topological order.

    Raises:
        ValueError: If the graph contains a cycle.

    Example:
        >>> topological_sort({"a": ["b"], "b": ["c"], "c": []})
        ['a', 'b', 'c']

    """
    indegree: dict[T, int] = {}
    for node, deps in successors.items():
        indegree.setdefault(node, 0)
        for dep in deps:
            indegree[dep] = indegree.get(dep, 0) + 1

    queue = deque(node for node, deg in indegree.items() if deg == 0)
    order: list[T] = []

    while queue:
        node = queue.popleft()
        order.append(node)
        for successor in successors.get(node, ()):
            indegree[successor] -= 1
            if indegree[successor] == 0:
                queue.append(successor)

    if len(order) != len(indegree):
        msg = "Cycle detected in graph"
        raise ValueError(msg)

    return order


def find_cycle(successors: Mapping[T, Collection[T]]) -> list[T] | None:
    """Return the nodes of one cycle, or None if the graph is acyclic.

    The returned list starts and ends with the same node, e.g. ``["a", "b", "a"]``.

    Example:
        >>> find_cycle({"a": ["b"], "b": ["a"]})
        ['a', 'b', 'a']
        >>> find_cycle({"a": ["b"], "b": []}) is None
        True

    """
    white, grey, black = 0, 1, 2
    color: dict[T, int] = {}

    for start in successors:
        if color.get(start, white) != white:
            continue
        path: list[T] = [start]
        iterators = [iter(successors.get(start, ()))]
        color[start] = grey
        while iterators:
            try:
                nxt = next(iterators[-1])
            except StopIteration:
                color[path.pop()] = black
                iterators.pop()
                continue
            state = color.get(nxt, white)
            if state == grey:
                return [*path[path.index(nxt) :], nxt]
            if state == white:
                color[nxt] = grey
                path.append(nxt)
                iterators.append(iter(successors.get(nxt, ())))
    return None
