"""Validation of candidate task sets and single dependency edges.

Validation never raises for a bad graph: it returns a :class:`ValidationResult`
listing every error and warning with the offending task id. Warnings never make
a result invalid.
"""

from collections import Counter
from collections.abc import Sequence
from enum import StrEnum

import structlog
from pydantic import BaseModel, Field

from models.schemas import TaskNode
from scheduling.graph import DependencyGraph, is_valid_task_id

logger = structlog.get_logger(__name__)

DEFAULT_MAX_CHAIN_LENGTH = 10


class ValidationErrorKind(StrEnum):
    INVALID_ID = "invalid-id"
    DUPLICATE_TASK = "duplicate-task"
    SELF_DEPENDENCY = "self-dependency"
    MISSING_DEPENDENCY = "missing-dependency"
    CIRCULAR_DEPENDENCY = "circular-dependency"


class ValidationWarningKind(StrEnum):
    DUPLICATE_DEPENDENCY = "duplicate-dependency"
    ORPHAN_TASK = "orphan-task"
    LONG_CHAIN = "long-chain"


class ValidationIssue(BaseModel):
    """One validation finding.

    Attributes:
        task_id: The offending task, or ``*`` for whole-graph findings.
        kind: An error or warning kind.
        message: Human-readable description.
        dependency_id: The dependency involved, if any.
        cycle: For circular dependencies, the cycle that was found.
    """

    task_id: str
    kind: ValidationErrorKind | ValidationWarningKind
    message: str
    dependency_id: str | None = None
    cycle: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Outcome of validating a task set or a single edge."""

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @classmethod
    def build(
        cls,
        errors: list[ValidationIssue],
        warnings: list[ValidationIssue],
    ) -> "ValidationResult":
        return cls(valid=not errors, errors=errors, warnings=warnings)


def validate_task(task: TaskNode, known_ids: set[str]) -> ValidationResult:
    """Validate one task's id and dependency list against a set of known ids.

    Args:
        task: The task to check.
        known_ids: Ids of every task in the candidate set.

    Returns:
        Errors for a malformed id, self-dependencies and unknown dependencies;
        warnings for dependency ids listed more than once.
    """
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    if not is_valid_task_id(task.id):
        errors.append(
            ValidationIssue(
                task_id=task.id,
                kind=ValidationErrorKind.INVALID_ID,
                message=f"Invalid task id {task.id!r}: must be non-empty and not "
                "start with whitespace or '-'",
            )
        )

    counts = Counter(task.dependencies)
    for dep_id, count in counts.items():
        if count > 1:
            warnings.append(
                ValidationIssue(
                    task_id=task.id,
                    kind=ValidationWarningKind.DUPLICATE_DEPENDENCY,
                    message=f"Task {task.id} lists dependency {dep_id} {count} times",
                    dependency_id=dep_id,
                )
            )
        if dep_id == task.id:
            errors.append(
                ValidationIssue(
                    task_id=task.id,
                    kind=ValidationErrorKind.SELF_DEPENDENCY,
                    message=f"Task {task.id} cannot depend on itself",
                    dependency_id=dep_id,
                )
            )
        elif dep_id not in known_ids:
            errors.append(
                ValidationIssue(
                    task_id=task.id,
                    kind=ValidationErrorKind.MISSING_DEPENDENCY,
                    message=f"Task {task.id} depends on unknown task {dep_id}",
                    dependency_id=dep_id,
                )
            )

    return ValidationResult.build(errors, warnings)


def validate_task_graph(
    tasks: Sequence[TaskNode],
    max_chain_length: int = DEFAULT_MAX_CHAIN_LENGTH,
) -> ValidationResult:
    """Validate a whole candidate task set.

    Args:
        tasks: The candidate tasks.
        max_chain_length: Chains with more tasks than this produce a
            ``long-chain`` warning.

    Returns:
        A result that is invalid if and only if some task has a malformed or
        duplicated id, depends on itself, depends on an unknown id, or the set
        contains a cycle.
    """
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    id_counts = Counter(task.id for task in tasks)
    for task_id, count in id_counts.items():
        if count > 1:
            errors.append(
                ValidationIssue(
                    task_id=task_id,
                    kind=ValidationErrorKind.DUPLICATE_TASK,
                    message=f"Task id {task_id} is used by {count} tasks",
                )
            )

    known_ids = set(id_counts)
    for task in tasks:
        result = validate_task(task, known_ids)
        errors.extend(result.errors)
        warnings.extend(result.warnings)

    graph = DependencyGraph.from_tasks(task for task in tasks if is_valid_task_id(task.id))

    cycle = graph.find_cycle()
    if cycle is not None:
        errors.append(
            ValidationIssue(
                task_id=cycle[0],
                kind=ValidationErrorKind.CIRCULAR_DEPENDENCY,
                message=f"Circular dependency: {' -> '.join(cycle)}",
                cycle=cycle,
            )
        )

    if any(task.dependencies for task in tasks):
        referenced = {dep_id for task in tasks for dep_id in task.dependencies}
        depending = {task.id for task in tasks if task.dependencies}
        for task_id in id_counts:
            if task_id not in depending and task_id not in referenced:
                warnings.append(
                    ValidationIssue(
                        task_id=task_id,
                        kind=ValidationWarningKind.ORPHAN_TASK,
                        message=f"Task {task_id} has no dependencies and nothing depends on it",
                    )
                )

    if cycle is None:
        for task_id, length in graph.chain_lengths().items():
            if length > max_chain_length:
                warnings.append(
                    ValidationIssue(
                        task_id=task_id,
                        kind=ValidationWarningKind.LONG_CHAIN,
                        message=f"Task {task_id} has a dependency chain of {length} tasks; "
                        "consider breaking it into stages",
                    )
                )

    result = ValidationResult.build(errors, warnings)
    if not result.valid:
        logger.info(
            "task_graph_invalid",
            task_count=len(tasks),
            error_count=len(errors),
            warning_count=len(warnings),
        )
    return result


def validate_new_dependency(
    task_id: str,
    dependency_id: str,
    graph: DependencyGraph,
) -> ValidationResult:
    """Check a single proposed edge against an existing graph.

    The graph itself is not modified.
    """
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    for candidate in (task_id, dependency_id):
        if not is_valid_task_id(candidate):
            errors.append(
                ValidationIssue(
                    task_id=str(candidate),
                    kind=ValidationErrorKind.INVALID_ID,
                    message=f"Invalid task id {candidate!r}",
                )
            )
    if errors:
        return ValidationResult.build(errors, warnings)

    if task_id == dependency_id:
        errors.append(
            ValidationIssue(
                task_id=task_id,
                kind=ValidationErrorKind.SELF_DEPENDENCY,
                message=f"Task {task_id} cannot depend on itself",
                dependency_id=dependency_id,
            )
        )
    elif dependency_id not in graph:
        errors.append(
            ValidationIssue(
                task_id=task_id,
                kind=ValidationErrorKind.MISSING_DEPENDENCY,
                message=f"Task {task_id} depends on unknown task {dependency_id}",
                dependency_id=dependency_id,
            )
        )
    elif graph.has_dependency(task_id, dependency_id):
        warnings.append(
            ValidationIssue(
                task_id=task_id,
                kind=ValidationWarningKind.DUPLICATE_DEPENDENCY,
                message=f"Task {task_id} already depends on {dependency_id}",
                dependency_id=dependency_id,
            )
        )
    elif graph.would_create_cycle(task_id, dependency_id):
        errors.append(
            ValidationIssue(
                task_id=task_id,
                kind=ValidationErrorKind.CIRCULAR_DEPENDENCY,
                message=f"Dependency {task_id} -> {dependency_id} would create a cycle",
                dependency_id=dependency_id,
            )
        )

    return ValidationResult.build(errors, warnings)


def format_validation_errors(result: ValidationResult) -> str:
    """Render a result as plain text for logs and API error details."""
    if result.valid and not result.warnings:
        return "Task graph is valid"

    lines: list[str] = []
    if result.errors:
        lines.append(f"Errors ({len(result.errors)}):")
        lines.extend(f"  - [{e.kind}] {e.task_id}: {e.message}" for e in result.errors)
    if result.warnings:
        lines.append(f"Warnings ({len(result.warnings)}):")
        lines.extend(f"  - [{w.kind}] {w.task_id}: {w.message}" for w in result.warnings)
    return "\n".join(lines)
