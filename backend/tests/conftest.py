"""Shared test fixtures for backend tests.

Provides a fresh event bus and task store, a manual timer scheduler that
replaces the asyncio loop's ``call_later``, and a scripted verification
executor, so tests never wait on real timers or run real test commands.
"""

import asyncio
import sys
from collections.abc import Callable

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from scheduling.graph import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from config import Settings  # noqa: E402
from events.bus import EventBus  # noqa: E402
from models.verification import (  # noqa: E402
    TestCounts,
    VerificationRequest,
    VerificationResult,
)
from orchestrator import Orchestrator  # noqa: E402
from scheduling.queue import OrchestrationQueue  # noqa: E402
from scheduling.task_store import InMemoryTaskStore  # noqa: E402

# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_result(task_id: str, passed: bool = True, failed: int = 0) -> VerificationResult:
    """Build a VerificationResult with matching test counts."""
    return VerificationResult(
        task_id=task_id,
        passed=passed,
        test_results=TestCounts(
            total=3,
            passed=3 - failed,
            failed=failed,
        ),
    )


# ---------------------------------------------------------------------------
# Event Bus and store
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    return EventBus()


@pytest.fixture()
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture()
def queue(store: InMemoryTaskStore, event_bus: EventBus) -> OrchestrationQueue:
    return OrchestrationQueue(store, event_bus=event_bus)


# ---------------------------------------------------------------------------
# Manual timers
# ---------------------------------------------------------------------------


class ManualHandle:
    """Timer handle returned by ManualScheduler.call_later."""

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Deterministic stand-in for ``loop.call_later`` and ``time.time``.

    Time only moves when a test calls :meth:`advance`; due callbacks fire in
    order of their deadline.
    """

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.handles: list[ManualHandle] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    def clock(self) -> float:
        return self.now

    @property
    def pending(self) -> int:
        """Number of armed, not yet fired timers."""
        return sum(1 for h in self.handles if not h.cancelled and not h.fired)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [
                h for h in self.handles
                if not h.cancelled and not h.fired and h.when <= target
            ]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.now = handle.when
            handle.fired = True
            handle.callback()
        self.now = target


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


# ---------------------------------------------------------------------------
# Scripted verification executor
# ---------------------------------------------------------------------------


class ScriptedExecutor:
    """Verification executor that replays queued outcomes.

    Each entry is a VerificationResult, a bool (shorthand for a result with
    that ``passed`` value) or an exception to raise. When the script runs
    out, verifications pass. Set ``hold`` to make runs wait until it is set.
    """

    def __init__(self, *outcomes: VerificationResult | bool | Exception) -> None:
        self.outcomes: list[VerificationResult | bool | Exception] = list(outcomes)
        self.requests: list[VerificationRequest] = []
        self.hold: asyncio.Event | None = None

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        self.requests.append(request)
        if self.hold is not None:
            await self.hold.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, bool):
            return make_result(request.task_id, passed=outcome, failed=0 if outcome else 1)
        return outcome


@pytest.fixture()
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@pytest.fixture()
def app_settings() -> Settings:
    return Settings(
        stability_delay_seconds=5.0,
        max_verification_retries=2,
        pending_verification_ttl_minutes=1,
        log_format="text",
    )


@pytest.fixture()
def orchestrator(
    app_settings: Settings,
    executor: ScriptedExecutor,
    scheduler: ManualScheduler,
) -> Orchestrator:
    return Orchestrator.from_settings(
        app_settings,
        executor=executor,
        call_later=scheduler.call_later,
        clock=scheduler.clock,
    )
