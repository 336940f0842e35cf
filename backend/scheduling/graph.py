"""Directed dependency graph over task ids.

An edge ``task -> dependency`` means the task cannot run until the dependency
has completed. Every edge added through :meth:`DependencyGraph.add_dependency`
is checked first, so a graph built that way is always acyclic. Graphs built
with :meth:`DependencyGraph.from_tasks` are not checked and exist so that a
whole candidate task set can be inspected before it is accepted.
"""

import heapq
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from enum import IntEnum
from typing import Any

import structlog

from scheduling.errors import (
    CircularDependencyError,
    InvalidTaskIdError,
    MissingDependencyError,
    SelfDependencyError,
)

logger = structlog.get_logger(__name__)


def is_valid_task_id(task_id: Any) -> bool:
    """Return whether ``task_id`` is an acceptable task identifier.

    Any non-empty string is accepted unless it starts with whitespace or ``-``.
    """
    if not isinstance(task_id, str) or not task_id:
        return False
    return not (task_id[0].isspace() or task_id[0] == "-")


class _Mark(IntEnum):
    WHITE = 0
    GRAY = 1
    BLACK = 2


class DependencyGraph:
    """Adjacency structure mapping each task id to its dependency ids.

    Dependents are indexed as well so that "who is unblocked by X" is a
    constant-time lookup.
    """

    def __init__(self) -> None:
        self._dependencies: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {}

    @classmethod
    def from_tasks(cls, tasks: Iterable[Any]) -> "DependencyGraph":
        """Build a graph from task-like objects without validating edges.

        Edges pointing outside the task set and self edges are skipped; graph
        validation reports those separately. Cycles are kept.

        Args:
            tasks: Objects with ``id`` and ``dependencies`` attributes.

        Returns:
            The unchecked graph.
        """
        graph = cls()
        tasks = list(tasks)
        for task in tasks:
            graph.add_node(task.id)
        for task in tasks:
            for dep_id in task.dependencies:
                if dep_id != task.id and dep_id in graph:
                    graph._link(task.id, dep_id)
        return graph

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def add_node(self, task_id: str) -> None:
        """Register a task id. Adding a known id is a no-op.

        Raises:
            InvalidTaskIdError: If the id is malformed.
        """
        if task_id in self._dependencies:
            return
        if not is_valid_task_id(task_id):
            raise InvalidTaskIdError(str(task_id))
        self._dependencies[task_id] = set()
        self._dependents[task_id] = set()

    def has_node(self, task_id: str) -> bool:
        return task_id in self._dependencies

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._dependencies

    def __len__(self) -> int:
        return len(self._dependencies)

    def __iter__(self) -> Iterator[str]:
        return iter(self._dependencies)

    def nodes(self) -> list[str]:
        """All task ids in insertion order."""
        return list(self._dependencies)

    def remove_node(self, task_id: str) -> bool:
        """Remove a task and every edge touching it.

        Returns:
            True if the node existed.
        """
        if task_id not in self._dependencies:
            return False
        for dep_id in self._dependencies.pop(task_id):
            self._dependents[dep_id].discard(task_id)
        for dependent_id in self._dependents.pop(task_id):
            self._dependencies[dependent_id].discard(task_id)
        return True

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str, dependency_id: str) -> None:
        """Make ``task_id`` depend on ``dependency_id``.

        Checks run in a fixed order: the dependency must be known, the edge
        must not be a self edge, and it must not close a cycle. The depending
        task is registered if it is new. Re-adding an existing edge is a no-op.

        Raises:
            InvalidTaskIdError: If ``task_id`` is malformed.
            MissingDependencyError: If ``dependency_id`` is unknown.
            SelfDependencyError: If both ids are equal.
            CircularDependencyError: If the edge would create a cycle.
        """
        if not is_valid_task_id(task_id):
            raise InvalidTaskIdError(str(task_id))
        if dependency_id not in self._dependencies:
            raise MissingDependencyError(task_id, dependency_id)
        if task_id == dependency_id:
            raise SelfDependencyError(task_id)
        if task_id in self._dependencies and dependency_id in self._dependencies[task_id]:
            return

        path = self._path_between(dependency_id, task_id)
        if path is not None:
            raise CircularDependencyError(task_id, dependency_id, cycle=[task_id, *path])

        self.add_node(task_id)
        self._link(task_id, dependency_id)
        logger.debug("dependency_added", task_id=task_id, dependency_id=dependency_id)

    def remove_dependency(self, task_id: str, dependency_id: str) -> bool:
        """Remove one edge.

        Returns:
            True if the edge existed.
        """
        deps = self._dependencies.get(task_id)
        if deps is None or dependency_id not in deps:
            return False
        deps.discard(dependency_id)
        self._dependents[dependency_id].discard(task_id)
        return True

    def has_dependency(self, task_id: str, dependency_id: str) -> bool:
        return dependency_id in self._dependencies.get(task_id, ())

    def would_create_cycle(self, task_id: str, dependency_id: str) -> bool:
        """Return whether adding ``task_id -> dependency_id`` would close a cycle.

        Searches from the dependency along existing dependency edges for the
        task. A self edge counts as a cycle.
        """
        if task_id == dependency_id:
            return True
        if task_id not in self._dependencies or dependency_id not in self._dependencies:
            return False
        return self._path_between(dependency_id, task_id) is not None

    def _link(self, task_id: str, dependency_id: str) -> None:
        self._dependencies[task_id].add(dependency_id)
        self._dependents[dependency_id].add(task_id)

    def _path_between(self, start: str, target: str) -> list[str] | None:
        """Depth-first search along dependency edges from ``start`` to ``target``."""
        if start not in self._dependencies:
            return None
        parents: dict[str, str | None] = {start: None}
        stack = [start]
        while stack:
            node = stack.pop()
            if node == target:
                path = [node]
                while (parent := parents[path[-1]]) is not None:
                    path.append(parent)
                path.reverse()
                return path
            for dep_id in sorted(self._dependencies[node]):
                if dep_id not in parents:
                    parents[dep_id] = node
                    stack.append(dep_id)
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def dependencies(self, task_id: str) -> list[str]:
        """Direct dependencies of a task, sorted. Unknown ids yield ``[]``."""
        return sorted(self._dependencies.get(task_id, ()))

    def dependents(self, task_id: str) -> list[str]:
        """Tasks that directly depend on ``task_id``, sorted."""
        return sorted(self._dependents.get(task_id, ()))

    def all_dependencies(self, task_id: str) -> set[str]:
        """Transitive dependencies of a task."""
        return self._reachable(task_id, self._dependencies)

    def all_dependents(self, task_id: str) -> set[str]:
        """Every task that transitively depends on ``task_id``."""
        return self._reachable(task_id, self._dependents)

    @staticmethod
    def _reachable(task_id: str, edges: dict[str, set[str]]) -> set[str]:
        seen: set[str] = set()
        queue = deque(edges.get(task_id, ()))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            queue.extend(edges[node] - seen)
        return seen

    def roots(self) -> list[str]:
        """Tasks with no dependencies."""
        return [task_id for task_id, deps in self._dependencies.items() if not deps]

    def leaves(self) -> list[str]:
        """Tasks nothing depends on."""
        return [task_id for task_id, deps in self._dependents.items() if not deps]

    def edge_count(self) -> int:
        return sum(len(deps) for deps in self._dependencies.values())

    # ------------------------------------------------------------------
    # Whole-graph algorithms
    # ------------------------------------------------------------------

    def find_cycle(self) -> list[str] | None:
        """Find one cycle using an iterative three-colour depth-first search.

        Returns:
            The cycle as task ids with the first id repeated at the end, or
            None when the graph is acyclic.
        """
        marks = dict.fromkeys(self._dependencies, _Mark.WHITE)
        for root in self._dependencies:
            if marks[root] is not _Mark.WHITE:
                continue
            path: list[str] = [root]
            marks[root] = _Mark.GRAY
            stack: list[Iterator[str]] = [iter(sorted(self._dependencies[root]))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    marks[path.pop()] = _Mark.BLACK
                    continue
                if marks[child] is _Mark.GRAY:
                    return [*path[path.index(child):], child]
                if marks[child] is _Mark.WHITE:
                    marks[child] = _Mark.GRAY
                    path.append(child)
                    stack.append(iter(sorted(self._dependencies[child])))
        return None

    def has_cycle(self) -> bool:
        return self.find_cycle() is not None

    def topological_sort(self, key: Callable[[str], Any] | None = None) -> list[str]:
        """Order tasks so that every task comes after its dependencies.

        Uses Kahn's algorithm. Among tasks that are available at the same
        time, the smallest ``key(task_id)`` goes first; the id breaks ties.

        Raises:
            CircularDependencyError: If the graph contains a cycle.
        """
        sort_key = key or (lambda _task_id: 0)
        remaining = {task_id: len(deps) for task_id, deps in self._dependencies.items()}
        heap = [(sort_key(t), t) for t, count in remaining.items() if count == 0]
        heapq.heapify(heap)
        order: list[str] = []
        while heap:
            _, task_id = heapq.heappop(heap)
            order.append(task_id)
            for dependent_id in self._dependents[task_id]:
                remaining[dependent_id] -= 1
                if remaining[dependent_id] == 0:
                    heapq.heappush(heap, (sort_key(dependent_id), dependent_id))

        if len(order) != len(self._dependencies):
            cycle = self.find_cycle() or []
            first = cycle[0] if cycle else "*"
            raise CircularDependencyError(first, cycle=cycle)
        return order

    def layers(self) -> list[list[str]]:
        """Group tasks into levels that can run in parallel.

        Level 0 holds the roots; each later level holds tasks whose
        dependencies all sit in earlier levels.

        Raises:
            CircularDependencyError: If the graph contains a cycle.
        """
        depth: dict[str, int] = {}
        for task_id in self.topological_sort():
            deps = self._dependencies[task_id]
            depth[task_id] = 1 + max((depth[d] for d in deps), default=-1)
        levels: list[list[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for task_id, level in depth.items():
            levels[level].append(task_id)
        return [sorted(level) for level in levels]

    def chain_lengths(self) -> dict[str, int]:
        """Number of tasks on the longest dependency chain ending at each task.

        Raises:
            CircularDependencyError: If the graph contains a cycle.
        """
        lengths: dict[str, int] = {}
        for task_id in self.topological_sort():
            deps = self._dependencies[task_id]
            lengths[task_id] = 1 + max((lengths[d] for d in deps), default=0)
        return lengths

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def copy(self) -> "DependencyGraph":
        clone = DependencyGraph()
        clone._dependencies = {k: set(v) for k, v in self._dependencies.items()}
        clone._dependents = {k: set(v) for k, v in self._dependents.items()}
        return clone

    def to_adjacency(self) -> dict[str, list[str]]:
        """Task id to sorted dependency ids, in node insertion order."""
        return {task_id: sorted(deps) for task_id, deps in self._dependencies.items()}
