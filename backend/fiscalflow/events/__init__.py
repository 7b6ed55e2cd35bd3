"""
Event fabric — the publish/subscribe bus that decouples the Dispatcher,
the stage agents and the tool executor.
"""

from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import (
    BusMessage,
    TaskCompletedEvent,
    TaskFailedEvent,
    TaskStartEvent,
    ToolCall,
    ToolCompletedEvent,
    ToolRunEvent,
)

__all__ = [
    "EventBus",
    "BusMessage",
    "TaskStartEvent",
    "TaskCompletedEvent",
    "TaskFailedEvent",
    "ToolCall",
    "ToolRunEvent",
    "ToolCompletedEvent",
]
