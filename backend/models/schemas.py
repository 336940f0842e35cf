"""Pydantic schemas for tasks, plans, progress and API request/response models.

This module defines the data models shared by the scheduler, the execution
sessions and the HTTP API. All models use Pydantic v2.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class TaskStatus(StrEnum):
    """Lifecycle status of a single task."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class ExecutorClass(StrEnum):
    """Which class of worker handles a task."""

    PLANNING = "planning"
    CODING = "coding"
    VERIFICATION = "verification"
    RESEARCH = "research"
    ORCHESTRATOR = "orchestrator"


class ExecutionState(StrEnum):
    """States of an execution session."""

    IDLE = "idle"
    PREPARING = "preparing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TaskNode(BaseModel):
    """A unit of work produced by the planner.

    A task may list itself as a dependency at construction time; that is
    rejected by graph validation, not here.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(description="Unique task identifier", examples=["task-auth-1"])
    title: str = Field(default="", description="Short human-readable title")
    description: str = Field(default="", description="What the worker should do")
    dependencies: list[str] = Field(
        default_factory=list,
        description="Ids of tasks that must complete first",
    )
    priority: int | None = Field(
        default=None,
        description="Lower is more urgent; None uses the configured default",
    )
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form data; 'files' holds associated file paths",
    )
    assigned_team: ExecutorClass = Field(default=ExecutorClass.CODING)
    parent_id: str | None = Field(
        default=None,
        description="Feature group this task belongs to",
    )
    estimated_minutes: int = Field(default=30, ge=0)
    acceptance_criteria: list[str] = Field(default_factory=list)

    def effective_priority(self, default: int) -> int:
        """Return the priority, falling back to ``default`` when unset."""
        return default if self.priority is None else self.priority

    @property
    def files(self) -> list[str]:
        """File paths recorded in ``metadata['files']``."""
        raw = self.metadata.get("files")
        if not isinstance(raw, list):
            return []
        return [str(path) for path in raw]


class QueuedTask(TaskNode):
    """A task selected by the queue, enriched with its context references."""

    context_files: list[str] = Field(default_factory=list)


class FeatureGroup(BaseModel):
    """A feature that groups several tasks by ``parent_id``."""

    id: str
    title: str = ""
    description: str = ""


class ExecutionPlan(BaseModel):
    """Planner output handed off for execution."""

    name: str = Field(min_length=1, max_length=200, examples=["Add user login"])
    summary: str = ""
    features: list[FeatureGroup] = Field(default_factory=list)
    tasks: list[TaskNode] = Field(default_factory=list)


class TaskBreakdown(BaseModel):
    """Derived, read-only view of a plan's tasks.

    Attributes:
        tasks: Task definitions keyed by id, in plan order.
        feature_groups: Feature groups from the plan.
        dependency_graph: Task id to dependency ids, deduplicated.
        execution_order: A topological order of all task ids.
        critical_path: Longest dependency chain weighted by estimates.
        total_estimated_minutes: Sum of all task estimates.
        warnings: Validation warnings, formatted for display.
    """

    model_config = ConfigDict(frozen=True)

    tasks: dict[str, TaskNode]
    feature_groups: list[FeatureGroup] = Field(default_factory=list)
    dependency_graph: dict[str, list[str]]
    execution_order: list[str]
    critical_path: list[str] = Field(default_factory=list)
    total_estimated_minutes: int = 0
    warnings: list[str] = Field(default_factory=list)


class QueueStats(BaseModel):
    """Task counts per status bucket."""

    pending: int = 0
    ready: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0

    @property
    def total(self) -> int:
        """Sum of all buckets."""
        return (
            self.pending
            + self.ready
            + self.running
            + self.completed
            + self.failed
            + self.blocked
        )

    def to_dict(self) -> dict[str, int]:
        """Bucket counts plus the total."""
        data = self.model_dump()
        data["total"] = self.total
        return data


class GroupProgress(BaseModel):
    """Progress of a subset of tasks (one feature group or executor class)."""

    total: int = 0
    completed: int = 0
    in_progress: int = 0
    blocked: int = 0
    failed: int = 0
    progress_percent: int = 0


class ExecutionProgress(BaseModel):
    """Aggregate progress of an execution session."""

    session_id: str
    state: ExecutionState
    total_tasks: int = 0
    completed_tasks: int = 0
    in_progress_tasks: int = 0
    blocked_tasks: int = 0
    failed_tasks: int = 0
    pending_tasks: int = 0
    progress_percent: int = 0
    estimated_minutes_remaining: int = 0
    features: dict[str, GroupProgress] = Field(default_factory=dict)
    teams: dict[str, GroupProgress] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# API request / response models
# -----------------------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    """Request body for handing off a plan."""

    plan: ExecutionPlan


class StateLogResponse(BaseModel):
    """One entry of a session's state log."""

    state: ExecutionState
    timestamp: float
    reason: str


class SessionResponse(BaseModel):
    """Response for session creation and control calls."""

    session_id: str = Field(examples=["exec_abc123def456"])
    websocket_url: str = Field(examples=["/ws/exec_abc123def456"])
    state: ExecutionState


class SessionDetailResponse(BaseModel):
    """Detailed session information."""

    session_id: str
    plan_name: str
    state: ExecutionState
    created_at: float
    started_at: float | None = None
    ended_at: float | None = None
    task_statuses: dict[str, TaskStatus]
    execution_order: list[str]
    critical_path: list[str]
    warnings: list[str] = Field(default_factory=list)
    state_log: list[StateLogResponse] = Field(default_factory=list)


class SessionSummaryResponse(BaseModel):
    """Summary information for listing sessions."""

    session_id: str
    plan_name: str
    state: ExecutionState
    created_at: float
    total_tasks: int
    progress_percent: int


class FilesChangedRequest(BaseModel):
    """A worker reports that it modified files for a task."""

    modified_files: list[str] = Field(default_factory=list)
    change_summary: str = ""


class TaskFailedRequest(BaseModel):
    """A worker reports that it gave up on a task."""

    reason: str = Field(min_length=1, max_length=2000)


class TaskActionResponse(BaseModel):
    """Outcome of a task-level action."""

    task_id: str
    accepted: bool
    status: TaskStatus | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    timestamp: float
    version: str = "0.1.0"
    active_sessions: int = 0
    pending_verifications: int = 0
