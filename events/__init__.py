"""Event system for run observers.

This package provides the advisory event channel between the orchestration
loop and whoever watches it. The event system is an async pub/sub built on
asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - AgentEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution
    - LLMMetrics: Size and latency metrics for individual model calls

Usage:
    >>> from events import EventType, AgentEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("run_123")
    >>> await bus.publish(AgentEvent(type=EventType.RUN_STARTED, run_id="run_123"))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    AgentEvent,
    EventType,
    LLMMetrics,
)

__all__ = [
    # Event types
    "EventType",
    "AgentEvent",
    "LLMMetrics",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
