"""Async event bus for orchestrator notifications.

This module provides an EventBus class that fans orchestrator events out to
any number of consumers (WebSocket clients, tests, embedding applications).

The event bus is thread-safe and supports:
- Multiple subscribers per channel
- Async event delivery via asyncio.Queue
- Buffering of events published before the first subscriber connects
- Bounded per-channel history for replay on reconnect
- Channel close, which terminates all subscribers of that channel
"""

import asyncio
import contextlib
import threading
from collections import defaultdict, deque

import structlog

from events.types import EventType, OrchestratorEvent

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub event bus keyed by channel.

    The bus is constructed explicitly by the composition root and passed to
    the components that emit events.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately.

    Thread Safety:
        The subscription registry is guarded by a threading.Lock, and
        ``publish_sync`` hands queue writes to the event loop thread.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("tasks")
        >>> await bus.publish(OrchestratorEvent(
        ...     type=EventType.TASK_STATUS_CHANGED,
        ...     channel="tasks",
        ...     task_id="task-1",
        ...     data={"previous": "running", "status": "completed"},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("tasks", queue)
        >>> await bus.close_channel("tasks")

    Attributes:
        _subscribers: Dict mapping channel to list of subscriber queues
        _event_buffer: Dict mapping channel to its bounded buffer of
            events published before the first subscriber
        _event_history: Dict mapping channel to its most recent events
        _lock: Threading lock for thread-safe subscriber management
    """

    # Maximum number of events to retain per channel for replay on reconnect.
    MAX_HISTORY_PER_CHANNEL = 5000

    # Oldest buffered events are dropped once a channel without subscribers
    # holds this many.
    MAX_BUFFERED_PER_CHANNEL = 1000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[OrchestratorEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, deque[OrchestratorEvent]] = {}
        self._event_history: dict[str, list[OrchestratorEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        logger.info("event_bus_initialized")

    def subscribe(self, channel: str) -> asyncio.Queue[OrchestratorEvent]:
        """Subscribe to events for a channel.

        Buffered events for the channel, if any, are delivered to the new
        subscriber immediately and the buffer is cleared.

        Args:
            channel: The channel to subscribe to

        Returns:
            An asyncio.Queue that will receive OrchestratorEvent objects
        """
        with contextlib.suppress(RuntimeError):
            self._loop = asyncio.get_running_loop()

        queue: asyncio.Queue[OrchestratorEvent] = asyncio.Queue()
        with self._lock:
            self._subscribers[channel].append(queue)
            subscriber_count = len(self._subscribers[channel])
            buffered_events = self._event_buffer.pop(channel, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            channel=channel,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue[OrchestratorEvent]) -> None:
        """Unsubscribe a queue from a channel. Unknown queues are ignored.

        Args:
            channel: The channel to unsubscribe from
            queue: The queue to remove
        """
        with self._lock:
            queues = self._subscribers.get(channel)
            if not queues or queue not in queues:
                logger.debug("unsubscribe_queue_not_found", channel=channel)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[channel]
            logger.info(
                "subscriber_removed",
                channel=channel,
                subscriber_count=len(queues),
            )

    def _record(self, event: OrchestratorEvent) -> list[asyncio.Queue[OrchestratorEvent]]:
        """Store the event in history and return the subscribers to notify.

        Buffers the event instead when the channel has no subscribers.
        Must be called with the lock held.
        """
        if event.type != EventType.CHANNEL_CLOSED:
            history = self._event_history[event.channel]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_CHANNEL:
                del history[: len(history) - self.MAX_HISTORY_PER_CHANNEL]

        subscribers = list(self._subscribers.get(event.channel, []))
        if not subscribers:
            buffer = self._event_buffer.get(event.channel)
            if buffer is None:
                buffer = deque(maxlen=self.MAX_BUFFERED_PER_CHANNEL)
                self._event_buffer[event.channel] = buffer
            if len(buffer) == buffer.maxlen:
                logger.debug("buffered_event_dropped", channel=event.channel)
            buffer.append(event)
            logger.debug(
                "event_buffered",
                channel=event.channel,
                event_type=event.type.value,
                buffer_size=len(buffer),
            )
        return subscribers

    async def publish(self, event: OrchestratorEvent) -> None:
        """Publish an event to all subscribers of its channel.

        Delivery to each subscriber is bounded by a timeout so a stalled
        consumer cannot block the publisher.

        Args:
            event: The OrchestratorEvent to publish
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        with self._lock:
            subscribers = self._record(event)
        if not subscribers:
            return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    channel=event.channel,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.warning(
                    "event_delivery_failed",
                    channel=event.channel,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            channel=event.channel,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            task_id=event.task_id,
        )

    def publish_sync(self, event: OrchestratorEvent) -> None:
        """Publish an event from synchronous code.

        Queue writes are scheduled on the event loop thread with
        ``call_soon_threadsafe`` since asyncio.Queue is not thread-safe.

        Args:
            event: The OrchestratorEvent to publish
        """
        with self._lock:
            subscribers = self._record(event)
            loop = self._loop
        if not subscribers:
            return

        if loop is not None and not loop.is_closed():
            for queue in subscribers:
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
        else:
            for queue in subscribers:
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    logger.warning(
                        "queue_full_event_dropped",
                        channel=event.channel,
                        event_type=event.type.value,
                    )

        logger.debug(
            "event_published_sync",
            channel=event.channel,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, channel: str) -> list[OrchestratorEvent]:
        """Get stored events for a channel in chronological order."""
        with self._lock:
            return list(self._event_history.get(channel, []))

    async def close_channel(self, channel: str) -> None:
        """Close a channel and notify all subscribers.

        Each subscriber receives a CHANNEL_CLOSED sentinel so its read loop
        can exit. Subscribers and buffered events are dropped; history is
        kept for replay.

        Args:
            channel: The channel to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(channel, [])
            buffered = self._event_buffer.pop(channel, [])

        for queue in queues_to_signal:
            sentinel = OrchestratorEvent(
                type=EventType.CHANNEL_CLOSED,
                channel=channel,
                data={"reason": "channel_closed"},
            )
            await queue.put(sentinel)

        if queues_to_signal or buffered:
            logger.info(
                "channel_closed",
                channel=channel,
                subscribers_removed=len(queues_to_signal),
                buffered_events_cleared=len(buffered),
            )
        else:
            logger.debug("close_channel_not_found", channel=channel)

    def get_subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, []))

    def get_active_channels(self) -> list[str]:
        """Channels with at least one subscriber."""
        with self._lock:
            return list(self._subscribers.keys())

    def clear_event_history(self, channel: str) -> None:
        """Forget the replay history of a channel."""
        with self._lock:
            self._event_history.pop(channel, None)
