"""Execution session state machine.

An execution session binds one plan's task breakdown to a run. It moves
through a closed set of states, records every transition in an append-only
log, and tracks task statuses in its own copy so the canonical task records
are never touched by session bookkeeping.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from models.schemas import (
    ExecutionPlan,
    ExecutionState,
    ExecutorClass,
    TaskBreakdown,
    TaskNode,
    TaskStatus,
)

logger = structlog.get_logger(__name__)

VALID_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.IDLE: frozenset({ExecutionState.PREPARING, ExecutionState.CANCELLED}),
    ExecutionState.PREPARING: frozenset(
        {ExecutionState.RUNNING, ExecutionState.CANCELLED, ExecutionState.FAILED}
    ),
    ExecutionState.RUNNING: frozenset(
        {
            ExecutionState.PAUSED,
            ExecutionState.COMPLETED,
            ExecutionState.CANCELLED,
            ExecutionState.FAILED,
        }
    ),
    ExecutionState.PAUSED: frozenset({ExecutionState.RUNNING, ExecutionState.CANCELLED}),
    ExecutionState.COMPLETED: frozenset(),
    ExecutionState.CANCELLED: frozenset(),
    ExecutionState.FAILED: frozenset({ExecutionState.PREPARING}),
}

# States that accept no further task updates.
TERMINAL_STATES = frozenset({ExecutionState.COMPLETED, ExecutionState.CANCELLED})

# States that set ``ended_at``.
ENDED_STATES = frozenset(
    {ExecutionState.COMPLETED, ExecutionState.CANCELLED, ExecutionState.FAILED}
)

ALL_TASKS_COMPLETED = "All tasks completed"


def is_valid_transition(current: ExecutionState, requested: ExecutionState) -> bool:
    return requested in VALID_TRANSITIONS[current]


class IllegalTransitionError(RuntimeError):
    """Raised for a state change that is not in the transition table."""

    def __init__(self, current: ExecutionState, requested: ExecutionState) -> None:
        super().__init__(
            f"Invalid state transition: {current.value} -> {requested.value}"
        )
        self.current = current
        self.requested = requested


class SessionClosedError(RuntimeError):
    """Raised when a completed or cancelled session is asked to change."""


@dataclass(frozen=True)
class StateLogEntry:
    """One entry of the session's audit trail."""

    state: ExecutionState
    timestamp: float
    reason: str


TransitionListener = Callable[["ExecutionSession", ExecutionState, StateLogEntry], None]


class ExecutionSession:
    """One run of a plan's task breakdown.

    Attributes:
        id: Session identifier.
        plan: The plan that was handed off.
        breakdown: The derived, read-only task breakdown.
        task_statuses: Session-local task statuses.
        state: Current state.
        created_at: Creation timestamp.
        started_at: First entry into ``running``, or None.
        ended_at: Entry into completed, cancelled or failed, or None.
    """

    def __init__(
        self,
        session_id: str,
        plan: ExecutionPlan,
        breakdown: TaskBreakdown,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.id = session_id
        self.plan = plan
        self.breakdown = breakdown
        self.task_statuses: dict[str, TaskStatus] = {
            task_id: task.status for task_id, task in breakdown.tasks.items()
        }
        self._clock = clock
        self.state = ExecutionState.IDLE
        self.created_at = clock()
        self.started_at: float | None = None
        self.ended_at: float | None = None
        self._state_log: list[StateLogEntry] = [
            StateLogEntry(ExecutionState.IDLE, self.created_at, "Session created")
        ]
        self._assignments: dict[str, ExecutorClass] = {}
        self._listeners: list[TransitionListener] = []

    def __repr__(self) -> str:
        return f"ExecutionSession(id={self.id!r}, state={self.state.value!r})"

    @property
    def state_log(self) -> tuple[StateLogEntry, ...]:
        return tuple(self._state_log)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, requested: ExecutionState) -> bool:
        return is_valid_transition(self.state, requested)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def add_transition_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def transition(self, requested: ExecutionState, reason: str) -> StateLogEntry:
        """Move to ``requested`` and record it in the state log.

        Raises:
            IllegalTransitionError: If the pair is not in the transition
                table. The session is left unchanged.
        """
        if not self.can_transition(requested):
            raise IllegalTransitionError(self.state, requested)

        previous = self.state
        now = self._clock()
        entry = StateLogEntry(requested, now, reason)
        self.state = requested
        self._state_log.append(entry)

        if requested == ExecutionState.RUNNING and self.started_at is None:
            self.started_at = now
        if requested in ENDED_STATES:
            self.ended_at = now
        elif previous == ExecutionState.FAILED:
            self.ended_at = None

        logger.info(
            "session_state_changed",
            session_id=self.id,
            previous=previous.value,
            state=requested.value,
            reason=reason,
        )
        for listener in list(self._listeners):
            try:
                listener(self, previous, entry)
            except Exception as e:
                logger.error(
                    "transition_listener_failed",
                    session_id=self.id,
                    state=requested.value,
                    error=str(e),
                )
        return entry

    def start_execution(self) -> None:
        """Go from idle through preparing to running."""
        if self.state != ExecutionState.IDLE:
            raise IllegalTransitionError(self.state, ExecutionState.PREPARING)
        self.transition(ExecutionState.PREPARING, "Starting plan execution")
        self.transition(ExecutionState.RUNNING, "Execution started")

    def pause_execution(self, reason: str = "Execution paused by user") -> None:
        self.transition(ExecutionState.PAUSED, reason)

    def resume_execution(self, reason: str = "Execution resumed by user") -> None:
        self.transition(ExecutionState.RUNNING, reason)

    def cancel_execution(self, reason: str = "Execution cancelled by user") -> None:
        self.transition(ExecutionState.CANCELLED, reason)

    def fail_execution(self, reason: str) -> None:
        self.transition(ExecutionState.FAILED, reason)

    def retry_execution(self) -> list[str]:
        """Re-enter a failed session through preparing.

        Failed task statuses in the session copy go back to pending.

        Returns:
            Ids of the tasks that were reset.
        """
        if self.state != ExecutionState.FAILED:
            raise IllegalTransitionError(self.state, ExecutionState.PREPARING)
        self.transition(ExecutionState.PREPARING, "Retrying plan execution")
        reset = [
            task_id
            for task_id, status in self.task_statuses.items()
            if status == TaskStatus.FAILED
        ]
        for task_id in reset:
            self.task_statuses[task_id] = TaskStatus.PENDING
        self.transition(ExecutionState.RUNNING, "Execution restarted")
        return reset

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    def update_task_status(self, task_id: str, status: TaskStatus) -> bool:
        """Record a task status in the session copy.

        A running session whose tracked tasks are now all completed moves to
        ``completed``.

        Returns:
            True if this update completed the session.

        Raises:
            KeyError: If the task is not part of the session.
            SessionClosedError: If the session is completed or cancelled.
        """
        if task_id not in self.task_statuses:
            raise KeyError(task_id)
        if self.is_terminal:
            raise SessionClosedError(
                f"Session {self.id} is {self.state.value}; task updates are not accepted"
            )

        self.task_statuses[task_id] = status
        if self.state == ExecutionState.RUNNING and self.all_tasks_completed():
            self.transition(ExecutionState.COMPLETED, ALL_TASKS_COMPLETED)
            return True
        return False

    def all_tasks_completed(self) -> bool:
        return all(status == TaskStatus.COMPLETED for status in self.task_statuses.values())

    def dependencies_of(self, task_id: str) -> list[str]:
        """Dependencies recorded in the breakdown, not the live graph."""
        return self.breakdown.dependency_graph.get(task_id, [])

    def get_next_available_tasks(self) -> list[TaskNode]:
        """Tasks that could start now, in execution order.

        Returns:
            ``[]`` unless the session is running; otherwise every pending or
            ready task whose recorded dependencies are all completed, carrying
            its session-local status.
        """
        if self.state != ExecutionState.RUNNING:
            return []

        available: list[TaskNode] = []
        for task_id in self.breakdown.execution_order:
            status = self.task_statuses[task_id]
            if status not in (TaskStatus.PENDING, TaskStatus.READY):
                continue
            if all(
                self.task_statuses.get(dep_id) == TaskStatus.COMPLETED
                for dep_id in self.dependencies_of(task_id)
            ):
                available.append(
                    self.breakdown.tasks[task_id].model_copy(
                        update={"status": status, "assigned_team": self.team_for(task_id)}
                    )
                )
        return available

    def team_for(self, task_id: str) -> ExecutorClass:
        if task_id in self._assignments:
            return self._assignments[task_id]
        return self.breakdown.tasks[task_id].assigned_team

    def reassign_task(self, task_id: str, team: ExecutorClass) -> None:
        """Hand a task to a different executor class for this session.

        Raises:
            KeyError: If the task is not part of the session.
            SessionClosedError: If the session is completed or cancelled.
        """
        if task_id not in self.task_statuses:
            raise KeyError(task_id)
        if self.is_terminal:
            raise SessionClosedError(f"Session {self.id} is {self.state.value}")
        self._assignments[task_id] = team
        logger.info("task_reassigned", session_id=self.id, task_id=task_id, team=team.value)

    def is_stalled(self) -> bool:
        """Whether a running session can make no further progress.

        True when nothing is running or blocked, no task is available, and
        not every task is completed (e.g. a dependency failed).
        """
        if self.state != ExecutionState.RUNNING or self.all_tasks_completed():
            return False
        active = {TaskStatus.RUNNING, TaskStatus.BLOCKED}
        if any(status in active for status in self.task_statuses.values()):
            return False
        return not self.get_next_available_tasks()
