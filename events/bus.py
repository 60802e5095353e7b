"""Async event bus for run observers.

This module provides an EventBus class that fans events out from the
orchestration loop to any number of observers (the CLI progress logger,
tests, a future UI).

The event bus is thread-safe and supports:
- Multiple subscribers per run
- Async event delivery via asyncio.Queue
- Run lifecycle management (closing a run terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import AgentEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for run events.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately.

    Thread Safety:
        All registry operations use a threading.Lock, so subscribe and
        unsubscribe may be called from any thread.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("run_123")
        >>> await bus.publish(AgentEvent(
        ...     type=EventType.RUN_STARTED,
        ...     run_id="run_123",
        ... ))
        >>> event = await queue.get()
        >>> await bus.close_run("run_123")

    Attributes:
        _subscribers: Dict mapping run_id to list of subscriber queues
        _event_buffer: Dict mapping run_id to list of buffered events
        _event_history: Dict mapping run_id to everything published so far
        _lock: Threading lock for thread-safe subscriber management
    """

    # Maximum number of events to retain per run.
    MAX_HISTORY_PER_RUN = 5000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[AgentEvent]] = defaultdict(list)
        self._event_history: dict[str, list[AgentEvent]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, run_id: str) -> asyncio.Queue[AgentEvent]:
        """Subscribe to events for a run.

        If there are buffered events for this run they are delivered
        immediately to the new subscriber.

        Args:
            run_id: The run to subscribe to

        Returns:
            An asyncio.Queue that receives AgentEvent objects
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        buffered_events: list[AgentEvent] = []

        with self._lock:
            self._subscribers[run_id].append(queue)
            subscriber_count = len(self._subscribers[run_id])

            if run_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(run_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.debug(
            "subscriber_added",
            run_id=run_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        """Unsubscribe a queue from run events. Unknown queues are ignored."""
        with self._lock:
            subscribers = self._subscribers.get(run_id)
            if not subscribers or queue not in subscribers:
                logger.warning("unsubscribe_queue_not_found", run_id=run_id)
                return
            subscribers.remove(queue)
            if not subscribers:
                del self._subscribers[run_id]

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to all subscribers for its run.

        If there are no subscribers, the event is buffered until one
        connects. Every event except the closing sentinel is also kept in
        the run's history.

        Delivery problems are logged and dropped; publishing never raises
        into the caller's control flow.

        Args:
            event: The AgentEvent to publish
        """
        with self._lock:
            if event.type != EventType.RUN_CLOSED:
                history = self._event_history[event.run_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_RUN:
                    self._event_history[event.run_id] = history[-self.MAX_HISTORY_PER_RUN:]

            subscribers = list(self._subscribers.get(event.run_id, []))

            if not subscribers:
                self._event_buffer[event.run_id].append(event)
                return

        # Bounded wait so a stalled consumer cannot block the loop
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    run_id=event.run_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.error(
                    "event_delivery_failed",
                    run_id=event.run_id,
                    event_type=event.type.value,
                    error=str(e),
                )

    def get_event_history(self, run_id: str) -> list[AgentEvent]:
        """Get all stored events for a run, in publication order."""
        with self._lock:
            return list(self._event_history.get(run_id, []))

    async def close_run(self, run_id: str) -> None:
        """Close a run and notify all subscribers.

        Puts a RUN_CLOSED sentinel into each subscriber queue so consumers
        can break out of their read loops, then drops subscribers and any
        buffered events. History is preserved.

        Args:
            run_id: The run to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(run_id, [])
            self._event_buffer.pop(run_id, None)

        for queue in queues_to_signal:
            queue.put_nowait(
                AgentEvent(
                    type=EventType.RUN_CLOSED,
                    run_id=run_id,
                    data={"reason": "run_closed"},
                )
            )

        logger.debug(
            "run_closed",
            run_id=run_id,
            subscribers_removed=len(queues_to_signal),
        )

    def get_subscriber_count(self, run_id: str) -> int:
        """Get the number of subscribers for a run."""
        with self._lock:
            return len(self._subscribers.get(run_id, []))


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    Primarily useful for tests that need a clean bus between runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
