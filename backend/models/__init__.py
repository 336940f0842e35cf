"""Models module for Pydantic schemas.

This module exposes the task, plan, progress, verification and API models.
"""

from models.schemas import (
    CreateSessionRequest,
    ExecutionPlan,
    ExecutionProgress,
    ExecutionState,
    ExecutorClass,
    FeatureGroup,
    FilesChangedRequest,
    GroupProgress,
    HealthResponse,
    QueuedTask,
    QueueStats,
    SessionDetailResponse,
    SessionResponse,
    SessionSummaryResponse,
    StateLogResponse,
    TaskActionResponse,
    TaskBreakdown,
    TaskFailedRequest,
    TaskNode,
    TaskStatus,
)
from models.verification import (
    CoverageMetrics,
    CriterionResult,
    TestCounts,
    TestFailure,
    VerificationOutcome,
    VerificationPriority,
    VerificationRequest,
    VerificationResult,
    VerificationStatusResponse,
)

__all__ = [
    "CoverageMetrics",
    "CreateSessionRequest",
    "CriterionResult",
    "ExecutionPlan",
    "ExecutionProgress",
    "ExecutionState",
    "ExecutorClass",
    "FeatureGroup",
    "FilesChangedRequest",
    "GroupProgress",
    "HealthResponse",
    "QueuedTask",
    "QueueStats",
    "SessionDetailResponse",
    "SessionResponse",
    "SessionSummaryResponse",
    "StateLogResponse",
    "TaskActionResponse",
    "TaskBreakdown",
    "TaskFailedRequest",
    "TaskNode",
    "TaskStatus",
    "TestCounts",
    "TestFailure",
    "VerificationOutcome",
    "VerificationPriority",
    "VerificationRequest",
    "VerificationResult",
    "VerificationStatusResponse",
]
