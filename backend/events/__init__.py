"""Event system for orchestrator notifications.

This package provides the outbound status surface of the orchestrator: task
status changes, session state transitions and verification outcomes are
published on an async pub/sub bus built on asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - OrchestratorEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution
    - TASKS_CHANNEL: Channel name for task and verification events

Usage:
    >>> from events import EventBus, EventType, OrchestratorEvent
    >>>
    >>> bus = EventBus()
    >>> queue = bus.subscribe("exec_123")
    >>> await bus.publish(OrchestratorEvent(
    ...     type=EventType.SESSION_STATE_CHANGED,
    ...     channel="exec_123",
    ...     data={"previous": "paused", "state": "running"},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import EventBus
from events.types import TASKS_CHANNEL, EventType, OrchestratorEvent

__all__ = [
    "EventBus",
    "EventType",
    "OrchestratorEvent",
    "TASKS_CHANNEL",
]
