"""Execution sessions: plan handoff, session state machine and progress."""

from execution.plan import PlanValidationError, build_task_breakdown, critical_path
from execution.progress import calculate_progress
from execution.session import (
    VALID_TRANSITIONS,
    ExecutionSession,
    IllegalTransitionError,
    SessionClosedError,
    StateLogEntry,
    is_valid_transition,
)

__all__ = [
    "ExecutionSession",
    "IllegalTransitionError",
    "PlanValidationError",
    "SessionClosedError",
    "StateLogEntry",
    "VALID_TRANSITIONS",
    "build_task_breakdown",
    "calculate_progress",
    "critical_path",
    "is_valid_transition",
]
