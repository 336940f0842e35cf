"""Ready-task selection over the shared task store.

The queue decides which task runs next and is, together with the
verification gate, the only writer of task statuses. Mutations never raise
for store failures: they log and return ``False`` so a scheduling loop can
retry or skip.
"""

from collections.abc import Callable, Collection

import structlog

from events import TASKS_CHANNEL, EventBus, EventType, OrchestratorEvent
from models.schemas import QueuedTask, QueueStats, TaskNode, TaskStatus
from scheduling.task_store import TaskStore

logger = structlog.get_logger(__name__)

DEFAULT_PRIORITY = 99
DEFAULT_CONTEXT_PREFIX = "context:dependency:"

# Called with the updated task and its previous status.
StatusListener = Callable[[TaskNode, TaskStatus], None]


class OrchestrationQueue:
    """Selects the next runnable task and records status changes.

    Attributes:
        store: The shared task store.
        default_priority: Priority assumed for tasks without one.
        context_prefix: Prefix of the per-dependency context tag.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        default_priority: int = DEFAULT_PRIORITY,
        context_prefix: str = DEFAULT_CONTEXT_PREFIX,
        event_bus: EventBus | None = None,
    ) -> None:
        self.store = store
        self.default_priority = default_priority
        self.context_prefix = context_prefix
        self.event_bus = event_bus
        self._context_cache: dict[str, list[str]] = {}
        self._listeners: list[StatusListener] = []

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def dependencies_met(self, task: TaskNode) -> bool:
        """Return whether every dependency of ``task`` is completed."""
        for dep_id in task.dependencies:
            dep = self.store.get_task(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                return False
        return True

    def _sort_key(self, task: TaskNode) -> tuple[int, str]:
        return (task.effective_priority(self.default_priority), task.id)

    def _eligible(
        self, status: TaskStatus, task_ids: Collection[str] | None
    ) -> list[TaskNode]:
        tasks = [
            task
            for task in self.store.get_tasks_by_status(status)
            if (task_ids is None or task.id in task_ids) and self.dependencies_met(task)
        ]
        return sorted(tasks, key=self._sort_key)

    def get_next_ready_task(
        self, task_ids: Collection[str] | None = None
    ) -> QueuedTask | None:
        """Pick the most urgent task whose dependencies have all completed.

        Ready tasks are considered first. When none qualifies, pending tasks
        are scanned and the best one is promoted to ready. Ties on priority
        are broken by task id.

        Args:
            task_ids: Restrict selection to these ids (one session's tasks).

        Returns:
            The chosen task enriched with ``context_files``, or None when no
            task is eligible.
        """
        ready = self._eligible(TaskStatus.READY, task_ids)
        if ready:
            return self._enrich(ready[0])

        pending = self._eligible(TaskStatus.PENDING, task_ids)
        if not pending:
            return None

        task = pending[0]
        if not self._apply(task.id, lambda: self.store.mark_ready(task.id)):
            return None
        promoted = self.store.get_task(task.id)
        if promoted is None:
            return None
        logger.debug("task_promoted_to_ready", task_id=task.id)
        return self._enrich(promoted)

    def _enrich(self, task: TaskNode) -> QueuedTask:
        context_files = self._context_cache.get(task.id)
        if context_files is None:
            context_files = [
                f"{self.context_prefix}{dep_id}"
                for dep_id in dict.fromkeys(task.dependencies)
                if (dep := self.store.get_task(dep_id)) is not None
                and dep.status == TaskStatus.COMPLETED
            ]
            context_files.extend(task.files)
            self._context_cache[task.id] = context_files
        return QueuedTask(**task.model_dump(), context_files=list(context_files))

    def clear_cache(self) -> None:
        self._context_cache.clear()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def start_task(self, task_id: str) -> bool:
        """Mark a task as running."""
        return self._apply(task_id, lambda: self.store.start_task(task_id))

    def complete_task(self, task_id: str) -> bool:
        """Mark a task as completed and drop its cached context."""
        ok = self._apply(task_id, lambda: self.store.complete_task(task_id))
        if ok:
            self._context_cache.pop(task_id, None)
        return ok

    def fail_task(self, task_id: str, reason: str) -> bool:
        """Mark a task as failed.

        Raises:
            ValueError: If ``reason`` is blank.
        """
        if not reason or not reason.strip():
            raise ValueError("A failure reason is required")
        ok = self._apply(task_id, lambda: self.store.fail_task(task_id, reason), reason)
        if ok:
            self._context_cache.pop(task_id, None)
            logger.warning("task_failed", task_id=task_id, reason=reason)
        return ok

    def block_task(self, task_id: str, reason: str) -> bool:
        """Mark a task as blocked, e.g. when it needs revision."""
        return self._apply(task_id, lambda: self.store.block_task(task_id, reason), reason)

    def requeue_task(self, task_id: str) -> bool:
        """Move a failed task back to pending so it can be selected again."""
        ok = self._apply(task_id, lambda: self.store.reset_task(task_id))
        if ok:
            self._context_cache.pop(task_id, None)
        return ok

    def _apply(
        self,
        task_id: str,
        action: Callable[[], TaskNode],
        reason: str | None = None,
    ) -> bool:
        current = self.store.get_task(task_id)
        previous = current.status if current is not None else None
        try:
            task = action()
        except Exception as e:
            logger.error("task_update_failed", task_id=task_id, error=str(e))
            return False

        if previous is not None and previous != task.status:
            self._notify(task, previous, reason)
        return True

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, task: TaskNode, previous: TaskStatus, reason: str | None) -> None:
        if self.event_bus is not None:
            self.event_bus.publish_sync(
                OrchestratorEvent(
                    type=EventType.TASK_STATUS_CHANGED,
                    channel=TASKS_CHANNEL,
                    task_id=task.id,
                    data={
                        "previous": previous.value,
                        "status": task.status.value,
                        "reason": reason,
                    },
                )
            )
        for listener in list(self._listeners):
            try:
                listener(task, previous)
            except Exception as e:
                logger.error(
                    "status_listener_failed",
                    task_id=task.id,
                    status=task.status.value,
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_tasks_by_status(self, status: TaskStatus) -> list[TaskNode]:
        return self.store.get_tasks_by_status(status)

    def get_stats(self, task_ids: Collection[str] | None = None) -> QueueStats:
        """Count tasks per status bucket.

        Every task is counted exactly once, so ``total`` always equals the sum
        of the buckets.
        """
        counts = dict.fromkeys(TaskStatus, 0)
        for task in self.store.get_all_tasks():
            if task_ids is None or task.id in task_ids:
                counts[task.status] += 1
        return QueueStats(**{status.value: count for status, count in counts.items()})
