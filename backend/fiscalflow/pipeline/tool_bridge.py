"""
ToolCallBridge — explicit suspend/resume of a stage waiting on a tool.

A stage whose inference call asks for a tool does not complete.  It
suspends: the bridge records a PendingToolCall (state ``awaiting_tool``)
holding everything needed to continue, then publishes ``tool:run``.
When ``orchestrator:tool_completed`` arrives, the stage calls resume();
only the first caller gets the record back (``awaiting_tool`` →
``resumed``), so a duplicated completion can never resume a stage twice.

Rules:
    - at most one outstanding tool call per job
    - at most ``max_round_trips`` tool calls per (job, stage)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fiscalflow.core.config import settings
from fiscalflow.core.constants import EventName, ToolCallState
from fiscalflow.core.logging import get_logger
from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import ToolCall, ToolRunEvent
from fiscalflow.integrations.inference import ToolExchange
from fiscalflow.pipeline.errors import ToolInvocationError, ToolRoundTripLimitError

logger = get_logger(__name__)


@dataclass
class PendingToolCall:
    """A stage suspended on a tool call, with the context to resume it."""

    job_id: str
    stage_name: str
    tool_call: ToolCall
    payload: dict[str, Any]
    prompt: str
    context_hash: str = ""
    exchanges: list[ToolExchange] = field(default_factory=list)
    round_trip: int = 1
    state: ToolCallState = ToolCallState.AWAITING_TOOL
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def captured_context(self) -> dict[str, Any]:
        return {
            "payload": self.payload,
            "prompt": self.prompt,
            "contextHash": self.context_hash,
            "exchanges": [
                {"name": e.name, "args": e.args, "result": e.result}
                for e in self.exchanges
            ],
        }


class ToolCallBridge:
    def __init__(self, bus: EventBus, max_round_trips: int | None = None) -> None:
        self.bus = bus
        self.max_round_trips = max_round_trips or settings.MAX_TOOL_ROUND_TRIPS
        self._pending: dict[str, PendingToolCall] = {}
        self._round_trips: dict[tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    async def suspend(
        self,
        job_id: str,
        stage_name: str,
        tool_call: ToolCall,
        payload: dict[str, Any],
        prompt: str,
        *,
        context_hash: str = "",
        exchanges: list[ToolExchange] | None = None,
    ) -> PendingToolCall:
        """
        Record the suspension and publish ``tool:run``.

        Raises:
            ToolInvocationError: The job already has a call awaiting a tool.
            ToolRoundTripLimitError: The stage used up its round trips.
        """
        async with self._lock:
            existing = self._pending.get(job_id)
            if existing is not None and existing.state == ToolCallState.AWAITING_TOOL:
                raise ToolInvocationError(
                    f"Job already awaits tool '{existing.tool_call.name}' for stage '{existing.stage_name}'",
                    tool_name=tool_call.name,
                    job_id=job_id,
                    stage_name=stage_name,
                )

            key = (job_id, stage_name)
            round_trip = self._round_trips.get(key, 0) + 1
            if round_trip > self.max_round_trips:
                raise ToolRoundTripLimitError(
                    f"Tool round-trip limit of {self.max_round_trips} reached",
                    limit=self.max_round_trips,
                    tool_name=tool_call.name,
                    job_id=job_id,
                    stage_name=stage_name,
                )
            self._round_trips[key] = round_trip

            record = PendingToolCall(
                job_id=job_id,
                stage_name=stage_name,
                tool_call=tool_call,
                payload=payload,
                prompt=prompt,
                context_hash=context_hash,
                exchanges=list(exchanges or []),
                round_trip=round_trip,
            )
            self._pending[job_id] = record

        logger.info(
            "Stage suspended on tool call",
            job_id=job_id,
            stage=stage_name,
            tool=tool_call.name,
            round_trip=round_trip,
        )
        self.bus.publish(
            EventName.TOOL_RUN,
            ToolRunEvent(
                job_id=job_id,
                stage_name=stage_name,
                tool_call=tool_call,
                payload=payload,
                prompt=prompt,
            ),
        )
        return record

    async def resume(self, job_id: str, stage_name: str) -> PendingToolCall | None:
        """
        Claim the suspended call of ``(job_id, stage_name)``.

        Returns None when nothing is awaiting (already resumed, never
        suspended, or released); the caller must then ignore the event.
        """
        async with self._lock:
            record = self._pending.get(job_id)
            if (
                record is None
                or record.stage_name != stage_name
                or record.state != ToolCallState.AWAITING_TOOL
            ):
                return None
            record.state = ToolCallState.RESUMED

        logger.info(
            "Stage resumed after tool call",
            job_id=job_id,
            stage=stage_name,
            tool=record.tool_call.name,
            round_trip=record.round_trip,
        )
        return record

    def pending(self, job_id: str) -> PendingToolCall | None:
        return self._pending.get(job_id)

    def round_trips(self, job_id: str, stage_name: str) -> int:
        return self._round_trips.get((job_id, stage_name), 0)

    async def release(self, job_id: str) -> None:
        """Forget a job's tool-call state once its stage reached a terminal event."""
        async with self._lock:
            self._pending.pop(job_id, None)
            for key in [k for k in self._round_trips if k[0] == job_id]:
                del self._round_trips[key]
