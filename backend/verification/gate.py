"""Debounced, retrying verification gate.

When a worker reports that it changed files for a task, the gate waits for a
stability delay. Every further change report restarts the delay. Only when a
task's files have been quiet for the whole delay does the gate run the
verification executor, and then:

* pass: the task is completed and its pending entry removed;
* fail with retries left: the task is blocked (needs revision), the retry
  count goes up and the entry is kept for the next change report;
* fail with no retries left: the task is failed and the entry removed.

A failed verification is a normal outcome, not an exception. An executor
that raises is logged and leaves the entry and retry count as they were.
"""

import asyncio
import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import structlog

from events import TASKS_CHANNEL, EventBus, EventType, OrchestratorEvent
from models.verification import (
    VerificationOutcome,
    VerificationRequest,
    VerificationResult,
    VerificationStatusResponse,
)
from verification.executor import VerificationExecutor
from verification.timers import CallLater, KeyedTimer

logger = structlog.get_logger(__name__)

DEFAULT_STABILITY_DELAY_SECONDS = 60.0
DEFAULT_MAX_RETRIES = 3


class StatusWriter(Protocol):
    """Where the gate records verification outcomes."""

    def complete_task(self, task_id: str) -> bool: ...

    def fail_task(self, task_id: str, reason: str) -> bool: ...

    def block_task(self, task_id: str, reason: str) -> bool: ...


@dataclass
class PendingVerification:
    """A verification waiting for its timer, running, or awaiting a revision.

    Attributes:
        request: What to verify; modified files accumulate across resets.
        queued_at: When the request was queued.
        updated_at: Last queue, reset or resolution.
        retry_count: Failed verifications so far.
        last_result: Most recent executor result.
        generation: Changes on every queue or reset; a result produced for an
            older generation is discarded.
    """

    request: VerificationRequest
    queued_at: float
    updated_at: float
    retry_count: int = 0
    last_result: VerificationResult | None = None
    generation: int = 0


class VerificationGate:
    """Debounce file-change signals and gate task completion on verification.

    Args:
        executor: Runs the actual checks.
        status_writer: Receives complete/block/fail calls for tasks.
        stability_delay_seconds: Quiet period before verification runs.
        max_retries: Failed verifications that still allow a revision.
        event_bus: Optional bus for verification events.
        call_later: Timer primitive; defaults to the running loop.
        clock: Time source for bookkeeping timestamps.
    """

    def __init__(
        self,
        executor: VerificationExecutor,
        status_writer: StatusWriter,
        *,
        stability_delay_seconds: float = DEFAULT_STABILITY_DELAY_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        event_bus: EventBus | None = None,
        call_later: CallLater | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if stability_delay_seconds < 0:
            raise ValueError("stability_delay_seconds must not be negative")
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self._executor = executor
        self._status = status_writer
        self.stability_delay_seconds = stability_delay_seconds
        self.max_retries = max_retries
        self._event_bus = event_bus
        self._clock = clock
        self._timers = KeyedTimer(call_later)
        self._pending: dict[str, PendingVerification] = {}
        self._running: dict[str, asyncio.Task[VerificationOutcome | None]] = {}
        self._generations = itertools.count(1)
        self._disposed = False

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def queue_verification(self, request: VerificationRequest) -> PendingVerification:
        """Record a fresh request and (re)start its stability timer.

        Any earlier entry for the task is replaced and its retry count
        dropped to zero.

        Raises:
            RuntimeError: If the gate has been disposed.
        """
        self._ensure_open()
        now = self._clock()
        entry = PendingVerification(
            request=request,
            queued_at=now,
            updated_at=now,
            generation=next(self._generations),
        )
        self._pending[request.task_id] = entry
        self._arm(request.task_id)

        logger.info(
            "verification_queued",
            task_id=request.task_id,
            delay_seconds=self.stability_delay_seconds,
            modified_files=len(request.modified_files),
            priority=request.priority.value,
        )
        self._emit(
            EventType.VERIFICATION_QUEUED,
            request.task_id,
            {"delay_seconds": self.stability_delay_seconds, "retry_count": 0},
        )
        return entry

    def reset_stability_timer(
        self, task_id: str, modified_files: list[str] | None = None
    ) -> bool:
        """Restart the stability timer of a pending verification.

        The retry count is kept. Newly reported files are added to the
        request. Does nothing when the task has no pending entry.

        Returns:
            True if a pending entry was found.
        """
        entry = self._pending.get(task_id)
        if entry is None or self._disposed:
            logger.debug("verification_reset_ignored", task_id=task_id)
            return False

        if modified_files:
            merged = list(dict.fromkeys([*entry.request.modified_files, *modified_files]))
            entry.request = entry.request.model_copy(update={"modified_files": merged})
        entry.generation = next(self._generations)
        entry.updated_at = self._clock()
        self._arm(task_id)

        logger.debug(
            "verification_timer_reset",
            task_id=task_id,
            retry_count=entry.retry_count,
        )
        self._emit(
            EventType.VERIFICATION_TIMER_RESET,
            task_id,
            {"delay_seconds": self.stability_delay_seconds, "retry_count": entry.retry_count},
        )
        return True

    def notify_files_changed(self, request: VerificationRequest) -> PendingVerification:
        """Handle a worker's file-change signal.

        Resets the timer of an existing entry (keeping its retry count) or
        queues a new one.
        """
        if self.reset_stability_timer(request.task_id, request.modified_files):
            return self._pending[request.task_id]
        return self.queue_verification(request)

    def _arm(self, task_id: str) -> None:
        self._timers.arm(
            task_id,
            self.stability_delay_seconds,
            lambda: self._on_timer(task_id),
        )

    def _on_timer(self, task_id: str) -> None:
        if self._disposed or task_id not in self._pending:
            return
        if task_id in self._running:
            # One run per task at a time; check again after another quiet period.
            self._arm(task_id)
            return
        self._start(task_id)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def _start(self, task_id: str) -> asyncio.Task[VerificationOutcome | None]:
        task = asyncio.get_running_loop().create_task(
            self._verify(task_id), name=f"verification_{task_id}"
        )
        self._running[task_id] = task

        def _forget(done: asyncio.Task[VerificationOutcome | None]) -> None:
            if self._running.get(task_id) is done:
                del self._running[task_id]

        task.add_done_callback(_forget)
        return task

    async def run_verification_now(self, task_id: str) -> VerificationOutcome | None:
        """Skip the stability delay and verify immediately.

        If a run for the task is already in flight, its outcome is awaited
        instead of starting a second one.

        Returns:
            The outcome, or None if nothing was pending, the executor failed,
            or the result was discarded.
        """
        self._ensure_open()
        if task_id not in self._pending:
            logger.debug("verification_run_now_not_pending", task_id=task_id)
            return None
        task = self._running.get(task_id)
        if task is None:
            self._timers.cancel(task_id)
            task = self._start(task_id)
        return await task

    async def _verify(self, task_id: str) -> VerificationOutcome | None:
        entry = self._pending.get(task_id)
        if entry is None:
            return None
        generation = entry.generation
        request = entry.request

        logger.info("verification_started", task_id=task_id, retry_count=entry.retry_count)
        self._emit(EventType.VERIFICATION_STARTED, task_id, {"retry_count": entry.retry_count})
        try:
            result = await self._executor.verify(request)
        except Exception as e:
            logger.error("verification_executor_failed", task_id=task_id, error=str(e))
            self._emit(EventType.VERIFICATION_ERROR, task_id, {"error": str(e)})
            return None

        current = self._pending.get(task_id)
        if current is None or current.generation != generation:
            logger.info(
                "verification_result_discarded",
                task_id=task_id,
                passed=result.passed,
                reason="cancelled" if current is None else "superseded",
            )
            return None
        return self._resolve(current, result)

    def _resolve(
        self, entry: PendingVerification, result: VerificationResult
    ) -> VerificationOutcome:
        task_id = entry.request.task_id
        entry.last_result = result
        entry.updated_at = self._clock()
        payload = result.model_dump(mode="json")

        if result.passed:
            self._drop(task_id)
            written = self._status.complete_task(task_id)
            outcome = VerificationOutcome.PASSED
            event_type = EventType.VERIFICATION_PASSED
        elif entry.retry_count < self.max_retries:
            entry.retry_count += 1
            written = self._status.block_task(
                task_id,
                f"Verification failed (attempt {entry.retry_count} of "
                f"{self.max_retries + 1}); revision needed",
            )
            outcome = VerificationOutcome.NEEDS_REVISION
            event_type = EventType.VERIFICATION_FAILED
        else:
            self._drop(task_id)
            written = self._status.fail_task(
                task_id,
                f"Verification failed after {entry.retry_count} retries",
            )
            outcome = VerificationOutcome.MAX_RETRIES_EXCEEDED
            event_type = EventType.VERIFICATION_MAX_RETRIES_EXCEEDED

        if not written:
            logger.warning(
                "verification_status_not_recorded",
                task_id=task_id,
                outcome=outcome.value,
            )
        log = logger.warning if outcome is VerificationOutcome.MAX_RETRIES_EXCEEDED else logger.info
        log(
            "verification_resolved",
            task_id=task_id,
            outcome=outcome.value,
            retry_count=entry.retry_count,
            tests_failed=result.test_results.failed,
        )
        self._emit(event_type, task_id, {"retry_count": entry.retry_count, "result": payload})
        return outcome

    def _drop(self, task_id: str) -> None:
        self._pending.pop(task_id, None)
        self._timers.cancel(task_id)

    # ------------------------------------------------------------------
    # Cancellation and cleanup
    # ------------------------------------------------------------------

    def cancel_verification(self, task_id: str) -> bool:
        """Forget a pending verification and its timer.

        A run already in flight finishes but its result is discarded.

        Returns:
            True if something was pending.
        """
        self._timers.cancel(task_id)
        entry = self._pending.pop(task_id, None)
        if entry is None:
            return False
        logger.info("verification_cancelled", task_id=task_id, retry_count=entry.retry_count)
        self._emit(EventType.VERIFICATION_CANCELLED, task_id, {"retry_count": entry.retry_count})
        return True

    def prune_stale(self, max_age_seconds: float) -> list[str]:
        """Drop idle pending entries untouched for longer than ``max_age_seconds``.

        Entries with an armed timer or a run in flight are never pruned. An
        entry exactly ``max_age_seconds`` old is kept.

        Returns:
            Ids of the pruned tasks.
        """
        now = self._clock()
        stale = [
            task_id
            for task_id, entry in self._pending.items()
            if not self._timers.is_armed(task_id)
            and task_id not in self._running
            and now - entry.updated_at > max_age_seconds
        ]
        for task_id in stale:
            self._pending.pop(task_id, None)
        if stale:
            logger.info("stale_verifications_pruned", task_ids=stale, count=len(stale))
        return stale

    def dispose(self) -> None:
        """Cancel every timer and forget all pending entries.

        Runs already in flight finish, but their results are discarded.
        """
        cancelled = self._timers.cancel_all()
        pending = len(self._pending)
        self._pending.clear()
        self._disposed = True
        logger.info("verification_gate_disposed", timers_cancelled=cancelled, pending=pending)

    async def aclose(self) -> None:
        """Dispose the gate and cancel verification runs still in flight."""
        self.dispose()
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait until no verification run is in flight."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    def _ensure_open(self) -> None:
        if self._disposed:
            raise RuntimeError("Verification gate has been disposed")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, task_id: str) -> bool:
        return task_id in self._pending

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    def get_pending(self, task_id: str) -> PendingVerification | None:
        return self._pending.get(task_id)

    def get_status(self, task_id: str) -> VerificationStatusResponse | None:
        entry = self._pending.get(task_id)
        if entry is None:
            return None
        return VerificationStatusResponse(
            task_id=task_id,
            queued_at=entry.queued_at,
            retry_count=entry.retry_count,
            timer_armed=self._timers.is_armed(task_id),
            running=task_id in self._running,
            last_result=entry.last_result,
        )

    def _emit(self, event_type: EventType, task_id: str, data: dict[str, object]) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish_sync(
            OrchestratorEvent(type=event_type, channel=TASKS_CHANNEL, task_id=task_id, data=data)
        )
