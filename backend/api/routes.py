"""HTTP API routes for the orchestrator backend.

This module defines endpoints for plan handoff, session control, worker
reporting, verification control and health checks. Real-time events are
handled via WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Request, status

from execution.plan import PlanValidationError
from execution.progress import calculate_progress
from execution.session import ExecutionSession, IllegalTransitionError, SessionClosedError
from models.schemas import (
    CreateSessionRequest,
    ExecutionProgress,
    FilesChangedRequest,
    HealthResponse,
    QueuedTask,
    SessionDetailResponse,
    SessionResponse,
    SessionSummaryResponse,
    StateLogResponse,
    TaskActionResponse,
    TaskFailedRequest,
    TaskNode,
)
from models.verification import VerificationStatusResponse
from orchestrator import Orchestrator, SessionNotFoundError, TaskOwnershipError
from scheduling.task_store import TaskNotFoundError

logger = structlog.get_logger(__name__)

router = APIRouter()

SessionId = Annotated[str, Path(description="The session ID")]
TaskId = Annotated[str, Path(description="The task ID")]

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def get_orchestrator(request: Request) -> Orchestrator:
    """Return the orchestrator created by the application lifespan.

    Raises:
        RuntimeError: If the application did not configure one.
    """
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        logger.error("orchestrator_not_configured")
        raise RuntimeError("Orchestrator not configured on app.state")
    return orchestrator


OrchestratorDep = Annotated[Orchestrator, Depends(get_orchestrator)]


def _require_session(orchestrator: Orchestrator, session_id: str) -> ExecutionSession:
    session = orchestrator.get_session(session_id)
    if session is None:
        logger.warning("session_not_found", session_id=session_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return session


def _require_task(orchestrator: Orchestrator, task_id: str) -> TaskNode:
    task = orchestrator.store.get_task(task_id)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} not found",
        )
    return task


def _session_response(session: ExecutionSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.id,
        websocket_url=f"/ws/{session.id}",
        state=session.state,
    )


def _session_detail(session: ExecutionSession) -> SessionDetailResponse:
    return SessionDetailResponse(
        session_id=session.id,
        plan_name=session.plan.name,
        state=session.state,
        created_at=session.created_at,
        started_at=session.started_at,
        ended_at=session.ended_at,
        task_statuses=dict(session.task_statuses),
        execution_order=list(session.breakdown.execution_order),
        critical_path=list(session.breakdown.critical_path),
        warnings=list(session.breakdown.warnings),
        state_log=[
            StateLogResponse(state=e.state, timestamp=e.timestamp, reason=e.reason)
            for e in session.state_log
        ],
    )


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------


@router.post(
    "/api/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Hand off a plan",
    description="Validate a plan's task graph and create an idle execution session.",
)
async def create_session(
    request: CreateSessionRequest, orchestrator: OrchestratorDep
) -> SessionResponse:
    """Create a session from a planner's output.

    Raises:
        HTTPException: 422 if the task graph is invalid, 409 if task ids are
            owned by an unfinished session.
    """
    try:
        session = orchestrator.create_session(request.plan)
    except PlanValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": "Invalid task graph",
                "errors": [issue.model_dump(mode="json") for issue in e.result.errors],
                "warnings": [issue.model_dump(mode="json") for issue in e.result.warnings],
            },
        ) from e
    except TaskOwnershipError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return _session_response(session)


@router.get(
    "/api/sessions",
    response_model=list[SessionSummaryResponse],
    summary="List sessions",
)
async def list_sessions(orchestrator: OrchestratorDep) -> list[SessionSummaryResponse]:
    """List sessions, newest first."""
    sessions = sorted(orchestrator.list_sessions(), key=lambda s: s.created_at, reverse=True)
    return [
        SessionSummaryResponse(
            session_id=session.id,
            plan_name=session.plan.name,
            state=session.state,
            created_at=session.created_at,
            total_tasks=len(session.task_statuses),
            progress_percent=calculate_progress(session).progress_percent,
        )
        for session in sessions
    ]


@router.get(
    "/api/sessions/{session_id}",
    response_model=SessionDetailResponse,
    summary="Get session details",
)
async def get_session(
    session_id: SessionId, orchestrator: OrchestratorDep
) -> SessionDetailResponse:
    """Return a session's state, task statuses and state log."""
    return _session_detail(_require_session(orchestrator, session_id))


def _control(
    orchestrator: Orchestrator,
    session_id: str,
    action: Callable[[str], ExecutionSession],
) -> SessionResponse:
    """Apply a state machine control to a session.

    Raises:
        HTTPException: 404 for unknown sessions, 409 for illegal transitions.
    """
    _require_session(orchestrator, session_id)
    try:
        session = action(session_id)
    except IllegalTransitionError as e:
        logger.warning(
            "session_control_rejected",
            session_id=session_id,
            action=action.__name__,
            error=str(e),
        )
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return _session_response(session)


@router.post(
    "/api/sessions/{session_id}/start",
    response_model=SessionResponse,
    summary="Start a session",
    description="Move an idle session through preparing to running.",
)
async def start_session(session_id: SessionId, orchestrator: OrchestratorDep) -> SessionResponse:
    return _control(orchestrator, session_id, orchestrator.start_session)


@router.post(
    "/api/sessions/{session_id}/pause",
    response_model=SessionResponse,
    summary="Pause a running session",
)
async def pause_session(session_id: SessionId, orchestrator: OrchestratorDep) -> SessionResponse:
    return _control(orchestrator, session_id, orchestrator.pause_session)


@router.post(
    "/api/sessions/{session_id}/resume",
    response_model=SessionResponse,
    summary="Resume a paused session",
)
async def resume_session(
    session_id: SessionId, orchestrator: OrchestratorDep
) -> SessionResponse:
    return _control(orchestrator, session_id, orchestrator.resume_session)


@router.post(
    "/api/sessions/{session_id}/cancel",
    response_model=SessionResponse,
    summary="Cancel a session",
    description="Cancel a session and drop the pending verifications of its tasks.",
)
async def cancel_session(
    session_id: SessionId, orchestrator: OrchestratorDep
) -> SessionResponse:
    return _control(orchestrator, session_id, orchestrator.cancel_session)


@router.post(
    "/api/sessions/{session_id}/retry",
    response_model=SessionResponse,
    summary="Retry a failed session",
    description="Re-enter a failed session; its failed tasks go back to pending.",
)
async def retry_session(session_id: SessionId, orchestrator: OrchestratorDep) -> SessionResponse:
    return _control(orchestrator, session_id, orchestrator.retry_session)


@router.get(
    "/api/sessions/{session_id}/progress",
    response_model=ExecutionProgress,
    summary="Get session progress",
)
async def get_progress(session_id: SessionId, orchestrator: OrchestratorDep) -> ExecutionProgress:
    return calculate_progress(_require_session(orchestrator, session_id))


@router.get(
    "/api/sessions/{session_id}/available-tasks",
    response_model=list[TaskNode],
    summary="List tasks that could start now",
)
async def get_available_tasks(
    session_id: SessionId, orchestrator: OrchestratorDep
) -> list[TaskNode]:
    return _require_session(orchestrator, session_id).get_next_available_tasks()


@router.post(
    "/api/sessions/{session_id}/next-task",
    response_model=QueuedTask | None,
    summary="Claim the next ready task",
    description="Select the session's most urgent ready task and mark it running. "
    "Returns null when nothing is eligible.",
)
async def claim_next_task(
    session_id: SessionId, orchestrator: OrchestratorDep
) -> QueuedTask | None:
    _require_session(orchestrator, session_id)
    return orchestrator.claim_next_task(session_id)


@router.get(
    "/api/sessions/{session_id}/stats",
    summary="Task counts for a session",
)
async def get_session_stats(
    session_id: SessionId, orchestrator: OrchestratorDep
) -> dict[str, int]:
    _require_session(orchestrator, session_id)
    return orchestrator.queue_stats(session_id).to_dict()


# -----------------------------------------------------------------------------
# Tasks and verification
# -----------------------------------------------------------------------------


@router.post(
    "/api/tasks/{task_id}/files-changed",
    response_model=VerificationStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Report modified files",
    description="Queue verification for the task or restart its stability timer.",
)
async def report_files_changed(
    task_id: TaskId, request: FilesChangedRequest, orchestrator: OrchestratorDep
) -> VerificationStatusResponse:
    _require_task(orchestrator, task_id)
    orchestrator.report_files_changed(task_id, request.modified_files, request.change_summary)
    return _verification_status(orchestrator, task_id)


@router.post(
    "/api/tasks/{task_id}/done",
    response_model=VerificationStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Report a task as implemented",
    description="The task's completion is gated behind verification.",
)
async def report_task_done(
    task_id: TaskId, request: FilesChangedRequest, orchestrator: OrchestratorDep
) -> VerificationStatusResponse:
    _require_task(orchestrator, task_id)
    orchestrator.report_task_done(task_id, request.modified_files, request.change_summary)
    return _verification_status(orchestrator, task_id)


@router.post(
    "/api/tasks/{task_id}/fail",
    response_model=TaskActionResponse,
    summary="Report a task as failed",
)
async def report_task_failed(
    task_id: TaskId, request: TaskFailedRequest, orchestrator: OrchestratorDep
) -> TaskActionResponse:
    _require_task(orchestrator, task_id)
    try:
        accepted = orchestrator.report_task_failed(task_id, request.reason)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except (SessionClosedError, TaskNotFoundError, SessionNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    task = orchestrator.store.get_task(task_id)
    return TaskActionResponse(
        task_id=task_id,
        accepted=accepted,
        status=task.status if task else None,
    )


@router.post(
    "/api/tasks/{task_id}/verify",
    summary="Verify a task immediately",
    description="Skip the stability delay and run verification now.",
)
async def verify_now(task_id: TaskId, orchestrator: OrchestratorDep) -> dict[str, Any]:
    _require_task(orchestrator, task_id)
    if orchestrator.verification_status(task_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending verification for task {task_id}",
        )
    outcome = await orchestrator.verify_now(task_id)
    task = orchestrator.store.get_task(task_id)
    return {
        "task_id": task_id,
        "outcome": outcome.value if outcome else None,
        "status": task.status.value if task else None,
    }


@router.get(
    "/api/tasks/{task_id}/verification",
    response_model=VerificationStatusResponse,
    summary="Get pending verification state",
)
async def get_verification(
    task_id: TaskId, orchestrator: OrchestratorDep
) -> VerificationStatusResponse:
    return _verification_status(orchestrator, task_id)


@router.delete(
    "/api/tasks/{task_id}/verification",
    response_model=TaskActionResponse,
    summary="Cancel a pending verification",
)
async def cancel_verification(
    task_id: TaskId, orchestrator: OrchestratorDep
) -> TaskActionResponse:
    cancelled = orchestrator.cancel_verification(task_id)
    task = orchestrator.store.get_task(task_id)
    return TaskActionResponse(
        task_id=task_id,
        accepted=cancelled,
        status=task.status if task else None,
    )


def _verification_status(orchestrator: Orchestrator, task_id: str) -> VerificationStatusResponse:
    verification = orchestrator.verification_status(task_id)
    if verification is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No pending verification for task {task_id}",
        )
    return verification


# -----------------------------------------------------------------------------
# Stats and health
# -----------------------------------------------------------------------------


@router.get("/api/stats", summary="Task counts across all sessions")
async def get_stats(orchestrator: OrchestratorDep) -> dict[str, int]:
    return orchestrator.queue_stats().to_dict()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check(orchestrator: OrchestratorDep) -> HealthResponse:
    """Report liveness plus session and verification counts."""
    active = sum(1 for s in orchestrator.list_sessions() if not s.is_terminal)
    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        active_sessions=active,
        pending_verifications=orchestrator.gate.pending_count,
    )
