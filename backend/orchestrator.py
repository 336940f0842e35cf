"""Composition root tying the scheduler, sessions and verification gate together.

This module provides the Orchestrator class. It owns one task store, one
orchestration queue, one verification gate and one event bus, all created
explicitly and passed to each other, and it keeps the registry of execution
sessions.

Data flow:
    plan -> create_session (validated breakdown, tasks registered in the store)
    -> claim_next_task (queue picks the next ready task and starts it)
    -> report_task_done / report_files_changed (gate debounces and verifies)
    -> queue writes the task status -> sessions mirror it and recompute progress
"""

import asyncio
import time
import uuid
from collections.abc import Callable

import structlog

from config import Settings
from events import TASKS_CHANNEL, EventBus, EventType, OrchestratorEvent
from execution.plan import build_task_breakdown
from execution.progress import calculate_progress
from execution.session import ExecutionSession, IllegalTransitionError, StateLogEntry
from models.schemas import (
    ExecutionPlan,
    ExecutionProgress,
    ExecutionState,
    QueuedTask,
    QueueStats,
    TaskNode,
    TaskStatus,
)
from models.verification import (
    VerificationOutcome,
    VerificationRequest,
    VerificationStatusResponse,
)
from scheduling.queue import DEFAULT_PRIORITY, OrchestrationQueue
from scheduling.task_store import InMemoryTaskStore, TaskNotFoundError
from scheduling.validation import DEFAULT_MAX_CHAIN_LENGTH
from verification.executor import CommandVerificationExecutor, VerificationExecutor
from verification.gate import PendingVerification, VerificationGate
from verification.timers import CallLater

logger = structlog.get_logger(__name__)

STALLED_REASON = "No runnable tasks remain"


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session {self.session_id} not found"


class TaskOwnershipError(ValueError):
    """Raised when a plan reuses task ids owned by an unfinished session."""


class Orchestrator:
    """Coordinates execution sessions over a shared task store.

    Attributes:
        store: Canonical task records.
        queue: Ready-task selection and task status writes.
        gate: Verification gate for finished work.
        event_bus: Outbound status surface.
    """

    def __init__(
        self,
        store: InMemoryTaskStore,
        queue: OrchestrationQueue,
        gate: VerificationGate,
        event_bus: EventBus,
        *,
        default_priority: int = DEFAULT_PRIORITY,
        max_chain_length: int = DEFAULT_MAX_CHAIN_LENGTH,
        pending_verification_ttl_seconds: float = 7200.0,
        finished_session_ttl_seconds: float = 3600.0,
    ) -> None:
        self.store = store
        self.queue = queue
        self.gate = gate
        self.event_bus = event_bus
        self.default_priority = default_priority
        self.max_chain_length = max_chain_length
        self.pending_verification_ttl_seconds = pending_verification_ttl_seconds
        self.finished_session_ttl_seconds = finished_session_ttl_seconds
        self._sessions: dict[str, ExecutionSession] = {}
        self._task_owner: dict[str, str] = {}
        self.queue.add_status_listener(self._on_task_status)
        logger.info("orchestrator_initialized")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        executor: VerificationExecutor | None = None,
        call_later: CallLater | None = None,
        clock: Callable[[], float] | None = None,
    ) -> "Orchestrator":
        """Build an orchestrator and its collaborators from configuration.

        Args:
            settings: Application settings.
            executor: Verification executor; defaults to running
                ``settings.verification_command``.
            call_later: Timer primitive for the gate.
            clock: Time source for the gate.
        """
        event_bus = EventBus()
        store = InMemoryTaskStore()
        queue = OrchestrationQueue(
            store,
            default_priority=settings.default_task_priority,
            context_prefix=settings.context_reference_prefix,
            event_bus=event_bus,
        )
        if executor is None:
            executor = CommandVerificationExecutor(
                settings.verification_command,
                workdir=settings.verification_workdir,
                timeout_seconds=settings.verification_timeout_seconds,
            )
        gate_kwargs = {} if clock is None else {"clock": clock}
        gate = VerificationGate(
            executor,
            queue,
            stability_delay_seconds=settings.stability_delay_seconds,
            max_retries=settings.max_verification_retries,
            event_bus=event_bus,
            call_later=call_later,
            **gate_kwargs,
        )
        return cls(
            store,
            queue,
            gate,
            event_bus,
            default_priority=settings.default_task_priority,
            max_chain_length=settings.max_dependency_chain,
            pending_verification_ttl_seconds=settings.pending_verification_ttl_minutes * 60.0,
            finished_session_ttl_seconds=settings.finished_session_ttl_minutes * 60.0,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _generate_session_id(self) -> str:
        """Generate a session id in the format ``exec_{12 hex chars}``."""
        return f"exec_{uuid.uuid4().hex[:12]}"

    def create_session(self, plan: ExecutionPlan) -> ExecutionSession:
        """Hand off a plan: validate it, register its tasks and create a session.

        Task records left behind by completed or cancelled sessions are
        replaced.

        Raises:
            PlanValidationError: If the plan's task graph is invalid.
            TaskOwnershipError: If a task id belongs to an unfinished session.
        """
        breakdown = build_task_breakdown(
            plan,
            default_priority=self.default_priority,
            max_chain_length=self.max_chain_length,
        )
        for task_id in breakdown.tasks:
            owner = self._sessions.get(self._task_owner.get(task_id, ""))
            if owner is not None and not owner.is_terminal:
                raise TaskOwnershipError(
                    f"Task {task_id} already belongs to session {owner.id} ({owner.state.value})"
                )

        session = ExecutionSession(self._generate_session_id(), plan, breakdown)
        for task in breakdown.tasks.values():
            self.gate.cancel_verification(task.id)
            self.store.add_task(task)
            self._task_owner[task.id] = session.id
        self.queue.clear_cache()
        session.add_transition_listener(self._on_session_transition)
        self._sessions[session.id] = session

        logger.info(
            "session_created",
            session_id=session.id,
            plan_name=plan.name,
            task_count=len(breakdown.tasks),
            warning_count=len(breakdown.warnings),
        )
        self.event_bus.publish_sync(
            OrchestratorEvent(
                type=EventType.SESSION_CREATED,
                channel=session.id,
                data={"plan_name": plan.name, "task_count": len(breakdown.tasks)},
            )
        )
        return session

    def get_session(self, session_id: str) -> ExecutionSession | None:
        return self._sessions.get(session_id)

    def require_session(self, session_id: str) -> ExecutionSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> list[ExecutionSession]:
        return list(self._sessions.values())

    def session_for_task(self, task_id: str) -> ExecutionSession | None:
        return self._sessions.get(self._task_owner.get(task_id, ""))

    def start_session(self, session_id: str) -> ExecutionSession:
        session = self.require_session(session_id)
        session.start_execution()
        return session

    def pause_session(self, session_id: str) -> ExecutionSession:
        session = self.require_session(session_id)
        session.pause_execution()
        return session

    def resume_session(self, session_id: str) -> ExecutionSession:
        """Resume a paused session.

        Tasks keep finishing while a session is paused, so the session copy
        is re-synced from the store. That may complete or stall the session.
        """
        session = self.require_session(session_id)
        session.resume_execution()
        for task_id in list(session.task_statuses):
            task = self.store.get_task(task_id)
            if task is None:
                continue
            if session.update_task_status(task_id, task.status):
                break
        self._fail_if_stalled(session)
        return session

    def cancel_session(self, session_id: str) -> ExecutionSession:
        """Cancel a session and drop the pending verifications of its tasks."""
        session = self.require_session(session_id)
        session.cancel_execution()
        cancelled = [
            task_id for task_id in session.task_statuses if self.gate.cancel_verification(task_id)
        ]
        logger.info(
            "session_cancelled",
            session_id=session_id,
            verifications_cancelled=len(cancelled),
        )
        return session

    def retry_session(self, session_id: str) -> ExecutionSession:
        """Re-run a failed session; its failed tasks go back to pending."""
        session = self.require_session(session_id)
        if session.state != ExecutionState.FAILED:
            raise IllegalTransitionError(session.state, ExecutionState.PREPARING)
        reset = session.retry_execution()
        for task_id in session.task_statuses:
            task = self.store.get_task(task_id)
            if task is not None and task.status == TaskStatus.FAILED:
                self.queue.requeue_task(task_id)
        logger.info("session_retried", session_id=session_id, tasks_reset=len(reset))
        return session

    # ------------------------------------------------------------------
    # Worker-facing operations
    # ------------------------------------------------------------------

    def claim_next_task(self, session_id: str) -> QueuedTask | None:
        """Select the session's next ready task and mark it running.

        Returns:
            The started task, or None when the session is not running or no
            task is eligible.
        """
        session = self.require_session(session_id)
        if session.state != ExecutionState.RUNNING:
            logger.debug("claim_rejected_not_running", session_id=session_id)
            return None
        task = self.queue.get_next_ready_task(task_ids=session.task_statuses.keys())
        if task is None:
            return None
        if not self.queue.start_task(task.id):
            return None
        logger.info("task_claimed", session_id=session_id, task_id=task.id)
        return task.model_copy(update={"status": TaskStatus.RUNNING})

    def _require_task(self, task_id: str) -> TaskNode:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _verification_request(
        self, task: TaskNode, modified_files: list[str], change_summary: str
    ) -> VerificationRequest:
        test_files = task.metadata.get("test_files", [])
        return VerificationRequest(
            task_id=task.id,
            modified_files=modified_files,
            change_summary=change_summary,
            acceptance_criteria=list(task.acceptance_criteria),
            test_files=[str(f) for f in test_files] if isinstance(test_files, list) else [],
        )

    def report_files_changed(
        self, task_id: str, modified_files: list[str], change_summary: str = ""
    ) -> PendingVerification:
        """Worker signal that files for a task changed.

        Restarts the stability timer of a pending verification, or queues one.

        Raises:
            TaskNotFoundError: If the task is unknown.
        """
        task = self._require_task(task_id)
        request = self._verification_request(task, modified_files, change_summary)
        return self.gate.notify_files_changed(request)

    def report_task_done(
        self, task_id: str, modified_files: list[str], summary: str = ""
    ) -> PendingVerification:
        """Worker signal that its implementation of a task has landed.

        A task that was never started is started first, then verification
        is queued behind the stability delay.

        Raises:
            TaskNotFoundError: If the task is unknown.
        """
        task = self._require_task(task_id)
        if task.status in (TaskStatus.PENDING, TaskStatus.READY):
            self.queue.start_task(task_id)
        logger.info(
            "task_done_reported",
            task_id=task_id,
            modified_files=len(modified_files),
        )
        return self.report_files_changed(task_id, modified_files, summary)

    def report_task_failed(self, task_id: str, reason: str) -> bool:
        """Worker gave up on a task. Its pending verification is dropped."""
        self._require_task(task_id)
        self.gate.cancel_verification(task_id)
        return self.queue.fail_task(task_id, reason)

    async def verify_now(self, task_id: str) -> VerificationOutcome | None:
        return await self.gate.run_verification_now(task_id)

    def cancel_verification(self, task_id: str) -> bool:
        return self.gate.cancel_verification(task_id)

    def verification_status(self, task_id: str) -> VerificationStatusResponse | None:
        return self.gate.get_status(task_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def progress(self, session_id: str) -> ExecutionProgress:
        return calculate_progress(self.require_session(session_id))

    def available_tasks(self, session_id: str) -> list[TaskNode]:
        return self.require_session(session_id).get_next_available_tasks()

    def queue_stats(self, session_id: str | None = None) -> QueueStats:
        if session_id is None:
            return self.queue.get_stats()
        session = self.require_session(session_id)
        return self.queue.get_stats(task_ids=session.task_statuses.keys())

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def _on_task_status(self, task: TaskNode, previous: TaskStatus) -> None:
        session = self.session_for_task(task.id)
        if session is None or session.is_terminal:
            return
        session.update_task_status(task.id, task.status)
        self._fail_if_stalled(session)

    def _fail_if_stalled(self, session: ExecutionSession) -> None:
        if session.is_stalled():
            logger.warning("session_stalled", session_id=session.id)
            session.fail_execution(STALLED_REASON)

    def _on_session_transition(
        self, session: ExecutionSession, previous: ExecutionState, entry: StateLogEntry
    ) -> None:
        self.event_bus.publish_sync(
            OrchestratorEvent(
                type=EventType.SESSION_STATE_CHANGED,
                channel=session.id,
                timestamp=entry.timestamp,
                data={
                    "previous": previous.value,
                    "state": entry.state.value,
                    "reason": entry.reason,
                },
            )
        )

    # ------------------------------------------------------------------
    # Background cleanup and shutdown
    # ------------------------------------------------------------------

    def prune_stale_verifications(self) -> list[str]:
        return self.gate.prune_stale(self.pending_verification_ttl_seconds)

    async def prune_finished_sessions(self) -> list[str]:
        """Forget completed or cancelled sessions that ended over the TTL ago.

        Their event channels are closed, their history is dropped and their
        tasks are removed from the store. Failed sessions stay, since they
        can still be retried.

        Returns:
            Ids of the evicted sessions.
        """
        now = time.time()
        expired = [
            session
            for session in self._sessions.values()
            if session.is_terminal
            and session.ended_at is not None
            and now - session.ended_at > self.finished_session_ttl_seconds
        ]
        for session in expired:
            del self._sessions[session.id]
            for task_id in session.task_statuses:
                if self._task_owner.get(task_id) == session.id:
                    del self._task_owner[task_id]
                    self.store.remove_task(task_id)
            await self.event_bus.close_channel(session.id)
            self.event_bus.clear_event_history(session.id)
        if expired:
            self.queue.clear_cache()
            logger.info("finished_sessions_pruned", count=len(expired))
        return [session.id for session in expired]

    async def start_cleanup_loop(self, interval_seconds: float = 60.0) -> asyncio.Task[None]:
        """Start a background task that periodically prunes stale state.

        Each round drops idle pending verifications and evicts finished
        sessions.

        The task runs until cancelled (typically at application shutdown).

        Args:
            interval_seconds: Seconds between cleanup rounds.

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """

        async def _loop() -> None:
            logger.info("cleanup_loop_started", interval_seconds=interval_seconds)
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    self.prune_stale_verifications()
                    await self.prune_finished_sessions()
                except asyncio.CancelledError:
                    logger.info("cleanup_loop_stopped")
                    return
                except Exception as e:
                    logger.error("cleanup_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="verification_cleanup")

    async def shutdown(self) -> None:
        """Stop verification and close every event channel."""
        logger.info("orchestrator_shutdown_start", session_count=len(self._sessions))
        await self.gate.aclose()
        for session_id in list(self._sessions):
            try:
                await self.event_bus.close_channel(session_id)
            except Exception as e:
                logger.warning("close_channel_failed", session_id=session_id, error=str(e))
        await self.event_bus.close_channel(TASKS_CHANNEL)
        logger.info("orchestrator_shutdown_complete")
