"""Errors raised by dependency graph operations."""


class GraphError(ValueError):
    """Base class for rejected graph operations.

    Attributes:
        task_id: The task whose dependencies were being changed.
        dependency_id: The dependency involved, if any.
        message: Human-readable description.
    """

    kind = "graph-error"

    def __init__(self, task_id: str, message: str, dependency_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.dependency_id = dependency_id
        self.message = message


class InvalidTaskIdError(GraphError):
    """A task id is empty or starts with whitespace or a dash."""

    kind = "invalid-id"

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id, f"Invalid task id: {task_id!r}")


class MissingDependencyError(GraphError):
    """The dependency target is not a known task."""

    kind = "missing-dependency"

    def __init__(self, task_id: str, dependency_id: str) -> None:
        super().__init__(
            task_id,
            f"Task {task_id} depends on unknown task {dependency_id}",
            dependency_id,
        )


class SelfDependencyError(GraphError):
    """A task was made to depend on itself."""

    kind = "self-dependency"

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id, f"Task {task_id} cannot depend on itself", task_id)


class CircularDependencyError(GraphError):
    """Adding the edge would close a cycle.

    Attributes:
        cycle: The offending cycle as a list of task ids, first id repeated at the end.
    """

    kind = "circular-dependency"

    def __init__(
        self,
        task_id: str,
        dependency_id: str | None = None,
        cycle: list[str] | None = None,
    ) -> None:
        self.cycle = list(cycle or [])
        if self.cycle:
            message = f"Circular dependency: {' -> '.join(self.cycle)}"
        else:
            message = f"Dependency {task_id} -> {dependency_id} would create a cycle"
        super().__init__(task_id, message, dependency_id)
