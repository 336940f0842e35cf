"""Turn a planner's output into an immutable task breakdown."""

import structlog

from models.schemas import ExecutionPlan, TaskBreakdown, TaskNode
from scheduling.graph import DependencyGraph
from scheduling.queue import DEFAULT_PRIORITY
from scheduling.validation import (
    DEFAULT_MAX_CHAIN_LENGTH,
    ValidationResult,
    format_validation_errors,
    validate_task_graph,
)

logger = structlog.get_logger(__name__)


class PlanValidationError(ValueError):
    """Raised when a plan's task graph does not validate.

    Attributes:
        result: The failed validation result.
    """

    def __init__(self, result: ValidationResult) -> None:
        super().__init__(format_validation_errors(result))
        self.result = result


def critical_path(graph: DependencyGraph, tasks: dict[str, TaskNode]) -> list[str]:
    """Longest dependency chain, weighting each task by its estimate.

    Returns:
        Task ids from the first task of the chain to the last.
    """
    total: dict[str, int] = {}
    previous: dict[str, str | None] = {}
    for task_id in graph.topological_sort():
        best: str | None = None
        for dep_id in graph.dependencies(task_id):
            if best is None or total[dep_id] > total[best]:
                best = dep_id
        total[task_id] = tasks[task_id].estimated_minutes + (total[best] if best is not None else 0)
        previous[task_id] = best

    if not total:
        return []
    end = max(total, key=lambda task_id: (total[task_id], task_id))
    path = [end]
    while (step := previous[path[-1]]) is not None:
        path.append(step)
    path.reverse()
    return path


def build_task_breakdown(
    plan: ExecutionPlan,
    *,
    default_priority: int = DEFAULT_PRIORITY,
    max_chain_length: int = DEFAULT_MAX_CHAIN_LENGTH,
) -> TaskBreakdown:
    """Validate a plan and derive its breakdown.

    Args:
        plan: The planner output to hand off.
        default_priority: Priority assumed for tasks without one when
            ordering tasks.
        max_chain_length: Threshold for long-chain warnings.

    Returns:
        The breakdown with dependency map, execution order, critical path
        and total estimate.

    Raises:
        PlanValidationError: If the task graph is invalid.
    """
    result = validate_task_graph(plan.tasks, max_chain_length=max_chain_length)
    if not result.valid:
        logger.warning(
            "plan_rejected",
            plan_name=plan.name,
            error_count=len(result.errors),
        )
        raise PlanValidationError(result)

    tasks = {task.id: task.model_copy(deep=True) for task in plan.tasks}
    graph = DependencyGraph.from_tasks(tasks.values())
    order = graph.topological_sort(
        key=lambda task_id: tasks[task_id].effective_priority(default_priority)
    )
    path = critical_path(graph, tasks)

    breakdown = TaskBreakdown(
        tasks=tasks,
        feature_groups=list(plan.features),
        dependency_graph=graph.to_adjacency(),
        execution_order=order,
        critical_path=path,
        total_estimated_minutes=sum(task.estimated_minutes for task in tasks.values()),
        warnings=[f"[{w.kind}] {w.task_id}: {w.message}" for w in result.warnings],
    )
    logger.info(
        "task_breakdown_built",
        plan_name=plan.name,
        task_count=len(tasks),
        critical_path_length=len(path),
        total_estimated_minutes=breakdown.total_estimated_minutes,
        warning_count=len(result.warnings),
    )
    return breakdown
