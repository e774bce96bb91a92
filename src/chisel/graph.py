"""
Dependency Graph Builder - orders diffs into executable batches.

Edges come from two sources. Explicit ``depends_on`` declarations are added
first; a type precedence strategy then adds default orderings (users before
packages before services, and so on) wherever they do not contradict a path
the explicit edges already imply.
"""

import logging
from collections import deque
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from chisel.diff import Batch, ResourceDiff
from chisel.errors import DependencyCycleError

logger = logging.getLogger(__name__)

DEFAULT_TYPE_RANKS: Dict[str, int] = {
    "user": 0,
    "pkg": 10,
    "service": 20,
    "file": 30,
    "shell": 40,
}


class PrecedenceStrategy(Protocol):
    """Decides default orderings between resources of different types."""

    def must_precede(self, first: ResourceDiff, second: ResourceDiff) -> bool:
        ...


class TypePrecedence:
    """
    Orders resources by a per-type rank; lower ranks run first.

    Types without a rank impose no ordering.
    """

    def __init__(self, ranks: Optional[Mapping[str, int]] = None):
        self.ranks: Dict[str, int] = dict(
            DEFAULT_TYPE_RANKS if ranks is None else ranks
        )

    def with_rank(self, resource_type: str, rank: int) -> "TypePrecedence":
        ranks = dict(self.ranks)
        ranks[resource_type] = rank
        return TypePrecedence(ranks)

    def must_precede(self, first: ResourceDiff, second: ResourceDiff) -> bool:
        first_rank = self.ranks.get(first.resource_type)
        second_rank = self.ranks.get(second.resource_type)
        if first_rank is None or second_rank is None:
            return False
        return first_rank < second_rank


class NoPrecedence:
    """Only explicit dependencies order execution."""

    def must_precede(self, first: ResourceDiff, second: ResourceDiff) -> bool:
        return False


class DependencyGraph:
    """Directed graph over ResourceIDs; an edge ``a -> b`` means a runs before b."""

    def __init__(self):
        # dicts keep insertion order, which breaks ties inside a batch
        self._nodes: Dict[str, ResourceDiff] = {}
        self._edges: Dict[str, Dict[str, None]] = {}

    def add_node(self, diff: ResourceDiff) -> None:
        self._nodes[diff.resource_id] = diff
        self._edges.setdefault(diff.resource_id, {})

    def add_edge(self, before: str, after: str) -> None:
        for node in (before, after):
            if node not in self._nodes:
                raise KeyError(f"unknown node: {node}")
        self._edges[before][after] = None

    def has_edge(self, before: str, after: str) -> bool:
        return after in self._edges.get(before, {})

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def nodes(self) -> List[str]:
        return list(self._nodes)

    def successors(self, resource_id: str) -> List[str]:
        return list(self._edges.get(resource_id, {}))

    def reaches(self, source: str, target: str) -> bool:
        """True when a path of one or more edges leads from source to target."""
        seen = set()
        queue = deque(self._edges.get(source, {}))
        while queue:
            node = queue.popleft()
            if node == target:
                return True
            if node in seen:
                continue
            seen.add(node)
            queue.extend(self._edges.get(node, {}))
        return False

    def find_cycle(self) -> Optional[List[str]]:
        """
        Return one cycle as a list of ResourceIDs whose first and last
        elements are equal, or None when the graph is acyclic.
        """
        white, grey, black = 0, 1, 2
        color = {node: white for node in self._nodes}
        stack: List[str] = []

        def visit(node: str) -> Optional[List[str]]:
            color[node] = grey
            stack.append(node)
            for succ in self._edges[node]:
                if color[succ] == grey:
                    return stack[stack.index(succ):] + [succ]
                if color[succ] == white:
                    cycle = visit(succ)
                    if cycle:
                        return cycle
            stack.pop()
            color[node] = black
            return None

        for node in self._nodes:
            if color[node] == white:
                cycle = visit(node)
                if cycle:
                    return cycle
        return None

    def levels(self) -> List[List[ResourceDiff]]:
        """
        Kahn's algorithm, one level per round.

        Raises:
            DependencyCycleError: If some nodes can never become ready.
        """
        indegree = {node: 0 for node in self._nodes}
        for node in self._nodes:
            for succ in self._edges[node]:
                indegree[succ] += 1

        remaining = dict(indegree)
        levels: List[List[ResourceDiff]] = []
        while remaining:
            ready = [node for node, degree in remaining.items() if degree == 0]
            if not ready:
                raise DependencyCycleError(self.find_cycle() or list(remaining))
            for node in ready:
                del remaining[node]
                for succ in self._edges[node]:
                    remaining[succ] -= 1
            levels.append([self._nodes[node] for node in ready])
        return levels


def build_graph(
    diffs: Iterable[ResourceDiff],
    precedence: Optional[PrecedenceStrategy] = None,
) -> DependencyGraph:
    """
    Build the dependency graph for the diffs that need executing.

    References to diffs that are not scheduled (no-ops, errored entries or
    resources outside the set) count as already satisfied.

    Raises:
        DependencyCycleError: If the explicit dependencies form a cycle.
    """
    if precedence is None:
        precedence = TypePrecedence()

    graph = DependencyGraph()
    scheduled = [diff for diff in diffs if diff.has_changes]
    for diff in scheduled:
        graph.add_node(diff)

    for diff in scheduled:
        for dependency in diff.depends_on:
            if dependency in graph:
                graph.add_edge(dependency, diff.resource_id)
            else:
                logger.debug(
                    f"{diff.resource_id}: dependency {dependency} is not "
                    f"scheduled, treating as satisfied"
                )

    cycle = graph.find_cycle()
    if cycle:
        raise DependencyCycleError(cycle)

    for first in scheduled:
        for second in scheduled:
            if first is second or graph.has_edge(first.resource_id, second.resource_id):
                continue
            if not precedence.must_precede(first, second):
                continue
            # explicit declarations win over type defaults
            if graph.reaches(second.resource_id, first.resource_id):
                continue
            graph.add_edge(first.resource_id, second.resource_id)

    return graph


def build_batches(
    diffs: Sequence[ResourceDiff],
    precedence: Optional[PrecedenceStrategy] = None,
) -> List[Batch]:
    """
    Partition diffs into batches so every dependency sits in an earlier batch.

    Raises:
        DependencyCycleError: If the dependencies form a cycle.
    """
    graph = build_graph(diffs, precedence)
    batches = [
        Batch(index=index, diffs=level) for index, level in enumerate(graph.levels())
    ]
    logger.debug(
        f"Built {len(batches)} batch(es) for {len(graph)} scheduled diff(s)"
    )
    return batches
