"""Tests for execution/plan.py and execution/progress.py."""

import pytest

from execution.plan import PlanValidationError, build_task_breakdown, critical_path
from execution.progress import calculate_progress, percent
from execution.session import ExecutionSession
from models.schemas import (
    ExecutionPlan,
    ExecutionState,
    ExecutorClass,
    FeatureGroup,
    TaskNode,
    TaskStatus,
)
from scheduling.graph import DependencyGraph

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _plan(*tasks: TaskNode, features: list[FeatureGroup] | None = None) -> ExecutionPlan:
    return ExecutionPlan(name="Login feature", tasks=list(tasks), features=features or [])


def _login_plan() -> ExecutionPlan:
    return _plan(
        TaskNode(id="schema", estimated_minutes=20, parent_id="auth"),
        TaskNode(id="api", dependencies=["schema"], estimated_minutes=45, parent_id="auth"),
        TaskNode(
            id="ui",
            dependencies=["schema"],
            estimated_minutes=30,
            parent_id="frontend",
            priority=1,
        ),
        TaskNode(
            id="e2e",
            dependencies=["api", "ui"],
            estimated_minutes=15,
            assigned_team=ExecutorClass.VERIFICATION,
        ),
        features=[FeatureGroup(id="auth"), FeatureGroup(id="frontend")],
    )


# =========================================================================
# Breakdown
# =========================================================================


class TestBuildTaskBreakdown:
    """Plan handoff derives an immutable breakdown."""

    def test_breakdown_fields(self) -> None:
        breakdown = build_task_breakdown(_login_plan())
        assert list(breakdown.tasks) == ["schema", "api", "ui", "e2e"]
        assert breakdown.dependency_graph["e2e"] == ["api", "ui"]
        assert breakdown.execution_order == ["schema", "ui", "api", "e2e"]
        assert breakdown.critical_path == ["schema", "api", "e2e"]
        assert breakdown.total_estimated_minutes == 110
        assert [g.id for g in breakdown.feature_groups] == ["auth", "frontend"]

    def test_default_priority_changes_order(self) -> None:
        breakdown = build_task_breakdown(_login_plan(), default_priority=0)
        assert breakdown.execution_order == ["schema", "api", "ui", "e2e"]

    def test_tasks_are_copied(self) -> None:
        plan = _login_plan()
        breakdown = build_task_breakdown(plan)
        plan.tasks[0].status = TaskStatus.FAILED
        assert breakdown.tasks["schema"].status == TaskStatus.PENDING

    def test_breakdown_is_frozen(self) -> None:
        breakdown = build_task_breakdown(_login_plan())
        with pytest.raises(ValueError):
            breakdown.execution_order = []

    def test_warnings_are_formatted(self) -> None:
        breakdown = build_task_breakdown(
            _plan(TaskNode(id="a"), TaskNode(id="b", dependencies=["a"]), TaskNode(id="c"))
        )
        assert breakdown.warnings == [
            "[orphan-task] c: Task c has no dependencies and nothing depends on it"
        ]

    def test_invalid_plan_raises_with_result(self) -> None:
        with pytest.raises(PlanValidationError) as exc_info:
            build_task_breakdown(_plan(TaskNode(id="a", dependencies=["b"])))
        result = exc_info.value.result
        assert not result.valid
        assert result.errors[0].kind == "missing-dependency"
        assert "missing-dependency" in str(exc_info.value)

    def test_empty_plan(self) -> None:
        breakdown = build_task_breakdown(_plan())
        assert breakdown.tasks == {}
        assert breakdown.execution_order == []
        assert breakdown.critical_path == []


class TestCriticalPath:
    def test_weighted_by_estimate(self) -> None:
        tasks = {
            "a": TaskNode(id="a", estimated_minutes=10),
            "short": TaskNode(id="short", dependencies=["a"], estimated_minutes=5),
            "long": TaskNode(id="long", dependencies=["a"], estimated_minutes=50),
            "end": TaskNode(id="end", dependencies=["short", "long"], estimated_minutes=1),
        }
        graph = DependencyGraph.from_tasks(tasks.values())
        assert critical_path(graph, tasks) == ["a", "long", "end"]


# =========================================================================
# Progress
# =========================================================================


class TestPercent:
    @pytest.mark.parametrize(
        "completed, total, expected",
        [(0, 0, 0), (0, 3, 0), (1, 3, 33), (2, 3, 67), (1, 8, 13), (3, 3, 100)],
    )
    def test_rounds_half_up(self, completed: int, total: int, expected: int) -> None:
        assert percent(completed, total) == expected


class TestCalculateProgress:
    """Aggregation over the session's status copy."""

    @pytest.fixture()
    def session(self) -> ExecutionSession:
        plan = _login_plan()
        session = ExecutionSession("exec_progress", plan, build_task_breakdown(plan))
        session.start_execution()
        return session

    def test_fresh_session(self, session: ExecutionSession) -> None:
        progress = calculate_progress(session)
        assert progress.session_id == "exec_progress"
        assert progress.state == ExecutionState.RUNNING
        assert progress.total_tasks == 4
        assert progress.pending_tasks == 4
        assert progress.progress_percent == 0
        assert progress.estimated_minutes_remaining == 110

    def test_counts_and_groups(self, session: ExecutionSession) -> None:
        session.update_task_status("schema", TaskStatus.COMPLETED)
        session.update_task_status("api", TaskStatus.RUNNING)
        session.update_task_status("ui", TaskStatus.BLOCKED)

        progress = calculate_progress(session)
        assert progress.completed_tasks == 1
        assert progress.in_progress_tasks == 1
        assert progress.blocked_tasks == 1
        assert progress.pending_tasks == 1
        assert progress.progress_percent == 25
        assert progress.estimated_minutes_remaining == 90

        assert set(progress.features) == {"auth", "frontend"}
        assert progress.features["auth"].total == 2
        assert progress.features["auth"].progress_percent == 50
        assert progress.features["frontend"].blocked == 1
        assert progress.teams["coding"].total == 3
        assert progress.teams["verification"].total == 1

    def test_reassignment_moves_team_bucket(self, session: ExecutionSession) -> None:
        session.reassign_task("ui", ExecutorClass.RESEARCH)
        progress = calculate_progress(session)
        assert progress.teams["coding"].total == 2
        assert progress.teams["research"].total == 1

    def test_empty_session_is_zero_percent(self) -> None:
        plan = _plan()
        session = ExecutionSession("exec_empty", plan, build_task_breakdown(plan))
        progress = calculate_progress(session)
        assert progress.total_tasks == 0
        assert progress.progress_percent == 0
        assert progress.features == {}
