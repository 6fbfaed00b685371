"""Dependency ordering for plugins."""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable, Mapping


class CycleError(ValueError):
    """Raised when the plugin dependency graph cannot be ordered."""


def topological_sort(graph: Mapping[str, Iterable[str]]) -> list[str]:
    """Order graph's nodes so every node follows its dependencies.

    graph maps each node to the nodes it depends on. Ties are broken
    alphabetically. A cycle, or a dependency that is not itself a node,
    raises CycleError.
    """
    in_degree = {node: 0 for node in graph}
    dependents: dict[str, list[str]] = defaultdict(list)
    for node, deps in graph.items():
        for dep in deps:
            dependents[dep].append(node)
            in_degree[node] += 1

    queue = deque(sorted(node for node, degree in in_degree.items() if degree == 0))
    ordered: list[str] = []
    while queue:
        node = queue.popleft()
        ordered.append(node)
        for nxt in sorted(dependents.get(node, ())):
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                queue.append(nxt)

    if len(ordered) != len(graph):
        raise CycleError("cycle detected in plugin dependency graph")
    return ordered