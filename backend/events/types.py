"""Event type definitions for the orchestrator event system.

This module defines the notifications the scheduler emits to outside
observers. Every task status change, session state change and verification
outcome produces an event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# Channel that carries task-level and verification events. Session events use
# the session id as their channel.
TASKS_CHANNEL = "tasks"


class EventType(StrEnum):
    """All event types in the orchestrator.

    Events are categorized by:
    - Task lifecycle: status changes written to the task store
    - Session lifecycle: creation and state machine transitions
    - Verification: the debounce / verify / retry pipeline
    """

    # Task lifecycle
    TASK_STATUS_CHANGED = "task_status_changed"

    # Session lifecycle
    SESSION_CREATED = "session_created"
    SESSION_STATE_CHANGED = "session_state_changed"
    SESSION_ERROR = "session_error"

    # Verification
    VERIFICATION_QUEUED = "verification_queued"
    VERIFICATION_TIMER_RESET = "verification_timer_reset"
    VERIFICATION_STARTED = "verification_started"
    VERIFICATION_PASSED = "verification_passed"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_MAX_RETRIES_EXCEEDED = "verification_max_retries_exceeded"
    VERIFICATION_CANCELLED = "verification_cancelled"
    VERIFICATION_ERROR = "verification_error"

    # Sentinel pushed to subscribers when a channel is closed
    CHANNEL_CLOSED = "channel_closed"


class OrchestratorEvent(BaseModel):
    """An event emitted by the orchestrator.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - channel: Session id, or ``tasks`` for task and verification events
    - task_id: The task concerned (if applicable)
    - data: Event-specific payload

    Payload schemas by event type:

    TASK_STATUS_CHANGED:
        - previous: str - Status before the change
        - status: str - Status after the change
        - reason: Optional[str] - Failure or block reason

    SESSION_CREATED:
        - plan_name: str - Name of the handed-off plan
        - task_count: int - Number of tasks in the breakdown

    SESSION_STATE_CHANGED:
        - previous: str - State before the transition
        - state: str - State after the transition
        - reason: str - Reason recorded in the state log

    VERIFICATION_QUEUED / VERIFICATION_TIMER_RESET:
        - delay_seconds: float - Stability delay that was armed
        - retry_count: int - Failed attempts so far

    VERIFICATION_PASSED / VERIFICATION_FAILED / VERIFICATION_MAX_RETRIES_EXCEEDED:
        - retry_count: int - Failed attempts so far
        - result: dict - The serialized VerificationResult

    VERIFICATION_ERROR:
        - error: str - Why the executor could not produce a result
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    channel: str
    task_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "task_status_changed",
                    "timestamp": 1699876543.123,
                    "channel": "tasks",
                    "task_id": "task-auth-1",
                    "data": {"previous": "running", "status": "completed"},
                }
            ]
        }
    }
