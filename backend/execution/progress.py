"""Progress aggregation for execution sessions."""

from collections import defaultdict

from execution.session import ExecutionSession
from models.schemas import ExecutionProgress, GroupProgress, TaskStatus


def percent(completed: int, total: int) -> int:
    """Completed share as a whole percentage, rounding halves up. 0 when empty."""
    if total <= 0:
        return 0
    return (completed * 200 + total) // (total * 2)


def _group(statuses: list[TaskStatus]) -> GroupProgress:
    completed = statuses.count(TaskStatus.COMPLETED)
    return GroupProgress(
        total=len(statuses),
        completed=completed,
        in_progress=statuses.count(TaskStatus.RUNNING),
        blocked=statuses.count(TaskStatus.BLOCKED),
        failed=statuses.count(TaskStatus.FAILED),
        progress_percent=percent(completed, len(statuses)),
    )


def calculate_progress(session: ExecutionSession) -> ExecutionProgress:
    """Aggregate a session's task statuses.

    This is a pure read over the session's own status copy and can be called
    at any time.

    Args:
        session: The session to summarize.

    Returns:
        Overall counts, per-feature and per-executor-class breakdowns, the
        completion percentage and the estimated minutes left.
    """
    statuses = dict(session.task_statuses)
    tasks = session.breakdown.tasks

    by_feature: dict[str, list[TaskStatus]] = defaultdict(list)
    by_team: dict[str, list[TaskStatus]] = defaultdict(list)
    remaining_minutes = 0
    for task_id, status in statuses.items():
        task = tasks[task_id]
        if task.parent_id is not None:
            by_feature[task.parent_id].append(status)
        by_team[session.team_for(task_id).value].append(status)
        if status != TaskStatus.COMPLETED:
            remaining_minutes += task.estimated_minutes

    overall = _group(list(statuses.values()))
    return ExecutionProgress(
        session_id=session.id,
        state=session.state,
        total_tasks=overall.total,
        completed_tasks=overall.completed,
        in_progress_tasks=overall.in_progress,
        blocked_tasks=overall.blocked,
        failed_tasks=overall.failed,
        pending_tasks=sum(
            1 for s in statuses.values() if s in (TaskStatus.PENDING, TaskStatus.READY)
        ),
        progress_percent=overall.progress_percent,
        estimated_minutes_remaining=remaining_minutes,
        features={key: _group(value) for key, value in by_feature.items()},
        teams={key: _group(value) for key, value in by_team.items()},
    )
