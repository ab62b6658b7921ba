"""
Dependency graph algorithms shared by the graph builder and the workflow
file loader.

Graphs are plain adjacency mappings: keys are node IDs, values are the
nodes each key points to. Which direction an edge means is up to the
caller; the functions only need consistent use.
"""

import heapq
from typing import Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Set, TypeVar

N = TypeVar("N", bound=Hashable)


class CircularDependencyError(Exception):
    """Raised when circular dependencies are detected in a dependency graph."""
    pass


def is_reachable(graph: Mapping[N, Iterable[N]], start: N, target: N) -> bool:
    """
    Check whether ``target`` can be reached from ``start``.

    Iterative depth-first search, O(V + E). A node reaches itself.

    Args:
        graph: Adjacency mapping (node -> successors)
        start: Node to search from
        target: Node to look for

    Returns:
        True if a path start -> ... -> target exists
    """
    if start == target:
        return True

    visited: Set[N] = {start}
    stack: List[N] = [start]
    while stack:
        node = stack.pop()
        for nxt in graph.get(node, ()):
            if nxt == target:
                return True
            if nxt not in visited:
                visited.add(nxt)
                stack.append(nxt)
    return False


def assert_acyclic(
    graph: Mapping[N, Iterable[N]],
    error_context: str = ""
) -> None:
    """
    Validate that a dependency graph contains no cycles.

    Uses depth-first search with an explicit recursion stack so deep
    chains of continuation jobs do not hit Python's recursion limit.

    Args:
        graph: Adjacency mapping.
               Example: {"scf": ["dos", "band"], "dos": [], "band": []}
        error_context: Optional context string to include in error message.
                       Example: "workflow file 'mgo.yaml'"

    Raises:
        CircularDependencyError: If a cycle is detected in the graph.
    """
    visited: Set[N] = set()

    for root in graph:
        if root in visited:
            continue

        on_path: Set[N] = {root}
        visited.add(root)
        stack = [(root, iter(graph.get(root, ())))]

        while stack:
            node, successors = stack[-1]
            advanced = False
            for nxt in successors:
                if nxt in on_path:
                    context_str = f" in {error_context}" if error_context else ""
                    raise CircularDependencyError(
                        f"Circular dependency detected{context_str} involving node '{nxt}'"
                    )
                if nxt not in visited:
                    visited.add(nxt)
                    on_path.add(nxt)
                    stack.append((nxt, iter(graph.get(nxt, ()))))
                    advanced = True
                    break
            if not advanced:
                on_path.discard(node)
                stack.pop()


def topological_sort(
    nodes: Iterable[N],
    successors: Mapping[N, Iterable[N]],
    key: Optional[Callable[[N], object]] = None,
) -> List[N]:
    """
    Deterministic topological order (Kahn's algorithm).

    Among the nodes whose predecessors are all emitted, the one with the
    smallest ``key`` is emitted first, so identical graphs always produce
    identical orders regardless of insertion order.

    Args:
        nodes: All nodes of the graph
        successors: Adjacency mapping (node -> nodes that depend on it)
        key: Sort key used to break ties (defaults to the node itself)

    Returns:
        Nodes in dependency order

    Raises:
        CircularDependencyError: If the graph has a cycle
    """
    key = key or (lambda n: n)
    node_list = list(nodes)
    in_degree: Dict[N, int] = {n: 0 for n in node_list}
    for n in node_list:
        for succ in successors.get(n, ()):
            in_degree[succ] += 1

    heap = [(key(n), i, n) for i, n in enumerate(node_list) if in_degree[n] == 0]
    heapq.heapify(heap)
    counter = len(node_list)
    order: List[N] = []

    while heap:
        _, _, node = heapq.heappop(heap)
        order.append(node)
        for succ in successors.get(node, ()):
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(heap, (key(succ), counter, succ))
                counter += 1

    if len(order) != len(node_list):
        stuck = sorted(str(n) for n, d in in_degree.items() if d > 0)
        raise CircularDependencyError(f"Graph has cycles, stuck nodes: {stuck}")

    return order
