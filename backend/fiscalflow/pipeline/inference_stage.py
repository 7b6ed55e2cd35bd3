"""
InferenceStage — base class of stages that ask the inference provider.

On top of StageAgent it adds:
    - the semantic cache: a hit on (job, stage, context hash) completes
      the stage without calling the provider
    - tool delegation: when the provider asks for a tool, the stage
      suspends through the ToolCallBridge and publishes nothing terminal;
      ``orchestrator:tool_completed`` resumes it with the tool result
    - provider output decoding into a JSON object
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any

from fiscalflow.core.constants import EventName
from fiscalflow.core.logging import get_logger
from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import TaskFailedEvent, ToolCompletedEvent
from fiscalflow.ingestion.file_fingerprint import compute_context_hash
from fiscalflow.integrations.inference import (
    InferenceProvider,
    InferenceRequest,
    InferenceResponse,
    ToolExchange,
)
from fiscalflow.integrations.tools import ToolRegistry
from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.pipeline.stage import StageAgent
from fiscalflow.pipeline.tool_bridge import PendingToolCall, ToolCallBridge
from fiscalflow.processing.response_decoder import decode_structured_response
from fiscalflow.store.cache import SemanticCache
from fiscalflow.store.job_store import Job, JobStore

logger = get_logger(__name__)


class InferenceStage(StageAgent):
    """
    Subclasses MUST implement:
        - build_prompt(payload)                : user prompt text
        - finalize(payload, decoded, exchanges): decoded JSON → StageOutcome

    Subclasses MAY set:
        - system_instruction (str)
    """

    system_instruction: str | None = None

    def __init__(
        self,
        bus: EventBus,
        store: JobStore,
        provider: InferenceProvider,
        bridge: ToolCallBridge,
        cache: SemanticCache | None = None,
        tool_registry: ToolRegistry | None = None,
    ) -> None:
        super().__init__(bus, store)
        self.provider = provider
        self.bridge = bridge
        self.cache = cache
        self.tool_registry = tool_registry

    def register(self) -> None:
        super().register()
        self.bus.subscribe(EventName.TOOL_COMPLETED, self.on_tool_completed)
        self.bus.subscribe(EventName.TASK_FAILED, self.on_task_failed)

    @abstractmethod
    def build_prompt(self, payload: PipelinePayload) -> str:
        ...

    @abstractmethod
    def finalize(
        self,
        payload: PipelinePayload,
        decoded: dict[str, Any],
        exchanges: list[ToolExchange],
    ) -> StageOutcome:
        ...

    def _request(self, job_id: str, prompt: str, exchanges: list[ToolExchange]) -> InferenceRequest:
        return InferenceRequest(
            prompt=prompt,
            system_instruction=self.system_instruction,
            tools=self.tool_registry.declarations() if self.tool_registry else [],
            tool_exchanges=list(exchanges),
            job_id=job_id,
            stage_name=self.name,
        )

    # ─── First pass ────────────────────────────────────

    async def run(self, job_id: str, payload: PipelinePayload) -> StageOutcome | None:
        context_hash = compute_context_hash(payload.to_wire())

        if self.cache is not None:
            cached = await self.cache.get(job_id, self.name, context_hash)
            if cached is not None:
                return StageOutcome(
                    contributions=cached.get("contributions", {}),
                    info=cached.get("info"),
                    from_cache=True,
                )

        prompt = self.build_prompt(payload)
        response = await self.provider.generate(self._request(job_id, prompt, []))
        return await self._handle_response(job_id, payload, prompt, context_hash, [], response)

    async def _handle_response(
        self,
        job_id: str,
        payload: PipelinePayload,
        prompt: str,
        context_hash: str,
        exchanges: list[ToolExchange],
        response: InferenceResponse,
    ) -> StageOutcome | None:
        if response.tool_call is not None:
            await self.bridge.suspend(
                job_id,
                self.name,
                response.tool_call,
                payload.to_wire(),
                prompt,
                context_hash=context_hash,
                exchanges=exchanges,
            )
            return None

        decoded = decode_structured_response(response.text, job_id=job_id, stage_name=self.name)
        outcome = self.finalize(payload, decoded, exchanges)

        if self.cache is not None:
            await self.cache.set(
                job_id,
                self.name,
                context_hash,
                {"contributions": outcome.contributions, "info": outcome.info},
            )
        await self.bridge.release(job_id)
        return outcome

    # ─── Resume after a tool ───────────────────────────

    async def on_tool_completed(self, event: ToolCompletedEvent) -> None:
        stage_name = event.stage_name
        if stage_name is None:
            awaiting = self.bridge.pending(event.job_id)
            stage_name = awaiting.stage_name if awaiting is not None else None
        if stage_name != self.name:
            return

        log = logger.bind(job_id=event.job_id, stage=self.name, tool=event.tool_name)
        pending = await self.bridge.resume(event.job_id, self.name)
        if pending is None:
            log.info("Tool completion with nothing awaiting ignored")
            return

        self._running.add(event.job_id)
        try:
            await self._resume(event, pending, log)
        finally:
            self._running.discard(event.job_id)

    async def _resume(self, event: ToolCompletedEvent, pending: PendingToolCall, log) -> None:
        try:
            payload = PipelinePayload.from_wire(pending.payload)
            exchanges = [
                *pending.exchanges,
                ToolExchange(name=event.tool_name, args=dict(pending.tool_call.args), result=event.tool_result),
            ]
            await self.mark_in_progress(event.job_id, f"Resuming after tool '{event.tool_name}'...")
            response = await self.provider.generate(self._request(event.job_id, pending.prompt, exchanges))
            outcome = await self._handle_response(
                event.job_id, payload, pending.prompt, pending.context_hash, exchanges, response,
            )
        except Exception as exc:
            await self.fail(event.job_id, exc)
            return

        if outcome is None:
            log.info("Stage suspended again")
            return
        await self.complete(event.job_id, payload, outcome)
        log.info("Stage finished after tool round trip", round_trip=pending.round_trip)

    def start_conflict(self, job: Job) -> str | None:
        reason = super().start_conflict(job)
        if reason is None:
            # awaiting a tool, or resuming after one
            record = self.bridge.pending(job.id)
            if record is not None and record.stage_name == self.name:
                return f"stage has a tool call {record.state}"
        return reason

    # ─── Failure bookkeeping ───────────────────────────

    async def fail(self, job_id: str, exc: BaseException) -> None:
        await self.bridge.release(job_id)
        await super().fail(job_id, exc)

    async def on_task_failed(self, event: TaskFailedEvent) -> None:
        # Failures published by the tool executor on this stage's behalf
        if event.task_name == self.name:
            await self.bridge.release(event.job_id)
