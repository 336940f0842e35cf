"""Tests for scheduling/graph.py -- the dependency graph.

Covers node registration, checked edge insertion and its error order,
cycle detection, topological ordering and the derived queries.
"""

import pytest

from models.schemas import TaskNode
from scheduling.errors import (
    CircularDependencyError,
    GraphError,
    InvalidTaskIdError,
    MissingDependencyError,
    SelfDependencyError,
)
from scheduling.graph import DependencyGraph, is_valid_task_id

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _graph(*nodes: str) -> DependencyGraph:
    graph = DependencyGraph()
    for node in nodes:
        graph.add_node(node)
    return graph


def _chain(*nodes: str) -> DependencyGraph:
    """Build a -> b -> c ... where each node depends on the previous one."""
    graph = _graph(*nodes)
    for previous, node in zip(nodes, nodes[1:], strict=False):
        graph.add_dependency(node, previous)
    return graph


# =========================================================================
# Task ids
# =========================================================================


class TestTaskIds:
    """Which identifiers are acceptable."""

    @pytest.mark.parametrize("task_id", ["a", "task-1", "A B", "x-", "1"])
    def test_valid_ids(self, task_id: str) -> None:
        assert is_valid_task_id(task_id)

    @pytest.mark.parametrize("task_id", ["", " a", "\ta", "-a", None, 3])
    def test_invalid_ids(self, task_id: object) -> None:
        assert not is_valid_task_id(task_id)

    def test_add_node_rejects_invalid_id(self) -> None:
        graph = DependencyGraph()
        with pytest.raises(InvalidTaskIdError) as exc_info:
            graph.add_node("-bad")
        assert exc_info.value.kind == "invalid-id"
        assert len(graph) == 0

    def test_add_node_is_idempotent(self) -> None:
        graph = _graph("a", "b")
        graph.add_dependency("b", "a")
        graph.add_node("b")
        assert graph.dependencies("b") == ["a"]
        assert len(graph) == 2


# =========================================================================
# add_dependency
# =========================================================================


class TestAddDependency:
    """Checked edge insertion."""

    def test_adds_edge_and_reverse_index(self) -> None:
        graph = _graph("a", "b")
        graph.add_dependency("b", "a")
        assert graph.has_dependency("b", "a")
        assert graph.dependents("a") == ["b"]
        assert graph.edge_count() == 1

    def test_registers_new_depending_task(self) -> None:
        graph = _graph("a")
        graph.add_dependency("b", "a")
        assert "b" in graph
        assert graph.dependencies("b") == ["a"]

    def test_missing_dependency(self) -> None:
        graph = _graph("a")
        with pytest.raises(MissingDependencyError) as exc_info:
            graph.add_dependency("a", "ghost")
        assert exc_info.value.kind == "missing-dependency"
        assert exc_info.value.dependency_id == "ghost"

    def test_self_dependency(self) -> None:
        graph = _graph("a")
        with pytest.raises(SelfDependencyError):
            graph.add_dependency("a", "a")
        assert graph.edge_count() == 0

    def test_missing_is_reported_before_self(self) -> None:
        graph = DependencyGraph()
        with pytest.raises(MissingDependencyError):
            graph.add_dependency("a", "a")

    def test_invalid_task_id(self) -> None:
        graph = _graph("a")
        with pytest.raises(InvalidTaskIdError):
            graph.add_dependency(" b", "a")

    def test_reverse_edge_is_circular(self) -> None:
        graph = _graph("a", "b")
        graph.add_dependency("a", "b")
        with pytest.raises(CircularDependencyError) as exc_info:
            graph.add_dependency("b", "a")
        assert exc_info.value.kind == "circular-dependency"
        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1] == "b"
        assert not graph.has_dependency("b", "a")

    def test_long_cycle_rejected_and_graph_unchanged(self) -> None:
        graph = _chain("a", "b", "c", "d")
        before = graph.to_adjacency()
        with pytest.raises(CircularDependencyError) as exc_info:
            graph.add_dependency("a", "d")
        assert exc_info.value.cycle == ["a", "d", "c", "b", "a"]
        assert graph.to_adjacency() == before
        assert not graph.has_cycle()

    def test_duplicate_edge_is_noop(self) -> None:
        graph = _graph("a", "b")
        graph.add_dependency("b", "a")
        graph.add_dependency("b", "a")
        assert graph.edge_count() == 1

    def test_errors_share_base_class(self) -> None:
        graph = _graph("a")
        with pytest.raises(GraphError):
            graph.add_dependency("a", "a")

    def test_would_create_cycle(self) -> None:
        graph = _chain("a", "b", "c")
        assert graph.would_create_cycle("a", "c")
        assert graph.would_create_cycle("a", "a")
        assert not graph.would_create_cycle("c", "a")
        assert not graph.would_create_cycle("a", "unknown")


# =========================================================================
# Removal
# =========================================================================


class TestRemoval:
    """Removing nodes and edges keeps both indexes consistent."""

    def test_remove_dependency(self) -> None:
        graph = _chain("a", "b")
        assert graph.remove_dependency("b", "a") is True
        assert graph.dependents("a") == []
        assert graph.remove_dependency("b", "a") is False

    def test_remove_node_drops_edges(self) -> None:
        graph = _chain("a", "b", "c")
        assert graph.remove_node("b") is True
        assert graph.dependencies("c") == []
        assert graph.dependents("a") == []
        assert graph.remove_node("b") is False


# =========================================================================
# Unchecked construction and cycles
# =========================================================================


class TestFromTasks:
    """from_tasks keeps cycles so validation can report them."""

    def test_skips_unknown_and_self_edges(self) -> None:
        graph = DependencyGraph.from_tasks(
            [
                TaskNode(id="a", dependencies=["a", "ghost"]),
                TaskNode(id="b", dependencies=["a"]),
            ]
        )
        assert graph.to_adjacency() == {"a": [], "b": ["a"]}

    def test_find_cycle(self) -> None:
        graph = DependencyGraph.from_tasks(
            [
                TaskNode(id="a", dependencies=["c"]),
                TaskNode(id="b", dependencies=["a"]),
                TaskNode(id="c", dependencies=["b"]),
                TaskNode(id="d"),
            ]
        )
        cycle = graph.find_cycle()
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        assert graph.has_cycle()

    def test_acyclic_graph_has_no_cycle(self) -> None:
        assert _chain("a", "b", "c").find_cycle() is None

    def test_topological_sort_raises_on_cycle(self) -> None:
        graph = DependencyGraph.from_tasks(
            [TaskNode(id="a", dependencies=["b"]), TaskNode(id="b", dependencies=["a"])]
        )
        with pytest.raises(CircularDependencyError) as exc_info:
            graph.topological_sort()
        assert set(exc_info.value.cycle) == {"a", "b"}


# =========================================================================
# Ordering and queries
# =========================================================================


class TestOrdering:
    """Topological order, layers and chain lengths."""

    def test_dependencies_come_first(self) -> None:
        graph = _graph("c", "b", "a")
        graph.add_dependency("b", "a")
        graph.add_dependency("c", "b")
        assert graph.topological_sort() == ["a", "b", "c"]

    def test_key_orders_available_tasks(self) -> None:
        graph = _graph("root", "low", "high")
        graph.add_dependency("low", "root")
        graph.add_dependency("high", "root")
        priorities = {"root": 5, "low": 3, "high": 1}
        assert graph.topological_sort(key=priorities.__getitem__) == ["root", "high", "low"]

    def test_id_breaks_ties(self) -> None:
        graph = _graph("b", "c", "a")
        assert graph.topological_sort() == ["a", "b", "c"]

    def test_layers(self) -> None:
        graph = _graph("a", "b", "c", "d")
        graph.add_dependency("b", "a")
        graph.add_dependency("c", "a")
        graph.add_dependency("d", "b")
        graph.add_dependency("d", "c")
        assert graph.layers() == [["a"], ["b", "c"], ["d"]]

    def test_chain_lengths(self) -> None:
        graph = _chain("a", "b", "c")
        graph.add_node("solo")
        assert graph.chain_lengths() == {"a": 1, "b": 2, "c": 3, "solo": 1}

    def test_empty_graph(self) -> None:
        graph = DependencyGraph()
        assert graph.topological_sort() == []
        assert graph.layers() == []
        assert graph.find_cycle() is None


class TestQueries:
    """Reachability, roots and leaves."""

    def test_transitive_closures(self) -> None:
        graph = _chain("a", "b", "c")
        graph.add_node("x")
        assert graph.all_dependencies("c") == {"a", "b"}
        assert graph.all_dependents("a") == {"b", "c"}
        assert graph.all_dependencies("x") == set()

    def test_roots_and_leaves(self) -> None:
        graph = _chain("a", "b", "c")
        assert graph.roots() == ["a"]
        assert graph.leaves() == ["c"]

    def test_unknown_node_queries(self) -> None:
        graph = DependencyGraph()
        assert graph.dependencies("nope") == []
        assert graph.dependents("nope") == []

    def test_copy_is_independent(self) -> None:
        graph = _chain("a", "b")
        clone = graph.copy()
        clone.add_node("c")
        clone.add_dependency("c", "b")
        assert "c" not in graph
        assert graph.dependents("b") == []
        assert clone.nodes() == ["a", "b", "c"]
