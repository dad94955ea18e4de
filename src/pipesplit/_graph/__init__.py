"""Graph module providing dependency graph abstractions.

This module contains:
- DependencyGraph[T]: A generic, immutable directed graph of "happens before" edges
- topological_sort: Stable ordering of nodes by their dependencies
- find_cycle: Locating one cycle for diagnostics
"""

from ._algorithms import find_cycle, topological_sort
from ._dependency_graph import DependencyGraph

__all__ = ["DependencyGraph", "find_cycle", "topological_sort"]
