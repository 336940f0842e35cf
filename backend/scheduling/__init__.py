"""Scheduling core: dependency graph, validation, task store and ready queue."""

from scheduling.errors import (
    CircularDependencyError,
    GraphError,
    InvalidTaskIdError,
    MissingDependencyError,
    SelfDependencyError,
)
from scheduling.graph import DependencyGraph, is_valid_task_id
from scheduling.queue import OrchestrationQueue
from scheduling.task_store import (
    TASK_TRANSITIONS,
    InMemoryTaskStore,
    InvalidTaskTransitionError,
    TaskNotFoundError,
    TaskStore,
)
from scheduling.validation import (
    ValidationErrorKind,
    ValidationIssue,
    ValidationResult,
    ValidationWarningKind,
    format_validation_errors,
    validate_new_dependency,
    validate_task,
    validate_task_graph,
)

__all__ = [
    "CircularDependencyError",
    "DependencyGraph",
    "GraphError",
    "InMemoryTaskStore",
    "InvalidTaskIdError",
    "InvalidTaskTransitionError",
    "MissingDependencyError",
    "OrchestrationQueue",
    "SelfDependencyError",
    "TASK_TRANSITIONS",
    "TaskNotFoundError",
    "TaskStore",
    "ValidationErrorKind",
    "ValidationIssue",
    "ValidationResult",
    "ValidationWarningKind",
    "format_validation_errors",
    "is_valid_task_id",
    "validate_new_dependency",
    "validate_task",
    "validate_task_graph",
]
