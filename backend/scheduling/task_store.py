"""Canonical task status store.

The store is the single shared map of task records. The queue and the
verification gate write statuses through it; execution sessions only read it
and keep their own copies.
"""

from collections.abc import Iterable
from typing import Protocol

import structlog

from models.schemas import TaskNode, TaskStatus

logger = structlog.get_logger(__name__)


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.READY, TaskStatus.RUNNING, TaskStatus.BLOCKED, TaskStatus.FAILED}
    ),
    TaskStatus.READY: frozenset({TaskStatus.RUNNING, TaskStatus.BLOCKED, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED}
    ),
    TaskStatus.BLOCKED: frozenset(
        {TaskStatus.READY, TaskStatus.RUNNING, TaskStatus.COMPLETED, TaskStatus.FAILED}
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
}


class TaskNotFoundError(KeyError):
    """Raised when a task id is not in the store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task {self.task_id} not found"


class InvalidTaskTransitionError(ValueError):
    """Raised when a task status change is not allowed."""

    def __init__(self, task_id: str, current: TaskStatus, requested: TaskStatus) -> None:
        super().__init__(
            f"Invalid task transition for {task_id}: {current.value} -> {requested.value}"
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


class TaskStore(Protocol):
    """Operations the scheduler needs from a task store."""

    def get_task(self, task_id: str) -> TaskNode | None: ...

    def get_all_tasks(self) -> list[TaskNode]: ...

    def get_tasks_by_status(self, status: TaskStatus) -> list[TaskNode]: ...

    def start_task(self, task_id: str) -> TaskNode: ...

    def complete_task(self, task_id: str) -> TaskNode: ...

    def fail_task(self, task_id: str, reason: str) -> TaskNode: ...

    def block_task(self, task_id: str, reason: str) -> TaskNode: ...

    def mark_ready(self, task_id: str) -> TaskNode: ...

    def reset_task(self, task_id: str) -> TaskNode: ...


class InMemoryTaskStore:
    """Task store backed by an insertion-ordered dict.

    Tasks are copied on insert so callers cannot mutate stored records
    behind the store's back.
    """

    def __init__(self, tasks: Iterable[TaskNode] = ()) -> None:
        self._tasks: dict[str, TaskNode] = {}
        self.add_tasks(tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def add_task(self, task: TaskNode) -> TaskNode:
        """Insert or replace a task record."""
        stored = task.model_copy(deep=True)
        self._tasks[stored.id] = stored
        return stored

    def add_tasks(self, tasks: Iterable[TaskNode]) -> None:
        for task in tasks:
            self.add_task(task)

    def remove_task(self, task_id: str) -> bool:
        """Drop a task record. Returns whether it existed."""
        return self._tasks.pop(task_id, None) is not None

    def get_task(self, task_id: str) -> TaskNode | None:
        return self._tasks.get(task_id)

    def get_all_tasks(self) -> list[TaskNode]:
        return list(self._tasks.values())

    def get_tasks_by_status(self, status: TaskStatus) -> list[TaskNode]:
        return [task for task in self._tasks.values() if task.status == status]

    def start_task(self, task_id: str) -> TaskNode:
        return self._transition(task_id, TaskStatus.RUNNING)

    def complete_task(self, task_id: str) -> TaskNode:
        task = self._transition(task_id, TaskStatus.COMPLETED)
        task.metadata.pop("last_error", None)
        return task

    def fail_task(self, task_id: str, reason: str) -> TaskNode:
        task = self._transition(task_id, TaskStatus.FAILED)
        task.metadata["last_error"] = reason
        return task

    def block_task(self, task_id: str, reason: str) -> TaskNode:
        task = self._transition(task_id, TaskStatus.BLOCKED)
        task.metadata["last_error"] = reason
        return task

    def mark_ready(self, task_id: str) -> TaskNode:
        return self._transition(task_id, TaskStatus.READY)

    def reset_task(self, task_id: str) -> TaskNode:
        """Move a failed task back to pending."""
        return self._transition(task_id, TaskStatus.PENDING)

    def _transition(self, task_id: str, status: TaskStatus) -> TaskNode:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if status not in TASK_TRANSITIONS[task.status]:
            raise InvalidTaskTransitionError(task_id, task.status, status)
        previous = task.status
        task.status = status
        logger.debug(
            "task_status_updated",
            task_id=task_id,
            previous=previous.value,
            status=status.value,
        )
        return task
