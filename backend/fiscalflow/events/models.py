"""
Event models carried on the EventBus.

Python attributes are snake_case; the wire form (model_dump(by_alias=True))
uses the camelCase names of the event protocol, e.g. ``jobId``,
``taskName``, ``resultPayload``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fiscalflow.core.constants import EventName


class BusMessage(BaseModel):
    """Base class of every message published on the bus."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    job_id: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TaskStartEvent(BusMessage):
    """``task:start``: the Dispatcher asks a stage to run."""

    task_name: str
    payload: dict[str, Any] = Field(default_factory=dict)


class TaskCompletedEvent(BusMessage):
    """``task:completed``: a stage finished; ``payload`` is the accumulated state."""

    task_name: str
    result_payload: dict[str, Any] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)


class TaskFailedEvent(BusMessage):
    """``task:failed``: a stage (or a tool it delegated to) failed."""

    task_name: str
    error: str


class ToolCall(BaseModel):
    """A named function call requested by the inference provider."""

    model_config = ConfigDict(frozen=True)

    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolRunEvent(BusMessage):
    """``tool:run``: suspension point of a stage awaiting a tool result."""

    # optional on the wire; the bridge knows which stage is waiting
    stage_name: str | None = None
    tool_call: ToolCall
    payload: dict[str, Any] = Field(default_factory=dict)
    prompt: str = ""


class ToolCompletedEvent(BusMessage):
    """``orchestrator:tool_completed``: tool output routed back to its stage."""

    stage_name: str | None = None
    tool_name: str
    tool_result: dict[str, Any] = Field(default_factory=dict)
    original_payload: dict[str, Any] = Field(default_factory=dict)
    prompt: str = ""


EVENT_MODELS: dict[str, type[BusMessage]] = {
    EventName.TASK_START: TaskStartEvent,
    EventName.TASK_COMPLETED: TaskCompletedEvent,
    EventName.TASK_FAILED: TaskFailedEvent,
    EventName.TOOL_RUN: ToolRunEvent,
    EventName.TOOL_COMPLETED: ToolCompletedEvent,
}


def coerce_message(event_name: str, message: BusMessage | dict[str, Any]) -> BusMessage:
    """
    Validate a raw dict against the model registered for ``event_name``.

    Models pass through unchanged.  Unknown event names with a dict
    message raise ValueError.
    """
    if isinstance(message, BusMessage):
        return message
    model = EVENT_MODELS.get(event_name)
    if model is None:
        raise ValueError(f"No message model registered for event '{event_name}'")
    return model.model_validate(message)
