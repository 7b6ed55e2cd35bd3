"""
PipelineRuntime — wires the bus, the store, the Dispatcher, the stage
agents and the collaborators into one running pipeline.

Usage::

    runtime = build_runtime(store=InMemoryJobStore(), provider=my_provider)
    runtime.start()
    job = await runtime.submit({"files": [...]})
    job = await runtime.wait_for_job(job.id)
    await runtime.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from fiscalflow.core.config import settings
from fiscalflow.core.logging import get_logger
from fiscalflow.events.bus import EventBus
from fiscalflow.integrations.inference import GeminiInferenceProvider, InferenceProvider
from fiscalflow.integrations.registry_client import RegistryClient
from fiscalflow.integrations.tools import ToolExecutor, ToolRegistry, build_default_registry
from fiscalflow.integrations.vector_index import InMemoryVectorIndex, VectorIndex
from fiscalflow.pipeline.context import PipelinePayload
from fiscalflow.pipeline.dispatcher import PipelineDispatcher
from fiscalflow.pipeline.flow_resolver import FlowResolver
from fiscalflow.pipeline.reviews import StageReviewer
from fiscalflow.pipeline.stage import StageAgent
from fiscalflow.pipeline.stages.alert import AlertAgent
from fiscalflow.pipeline.stages.analysis import AnalysisStage
from fiscalflow.pipeline.stages.audit import AuditStage
from fiscalflow.pipeline.stages.classification import ClassificationStage
from fiscalflow.pipeline.stages.extraction import ExtractionStage
from fiscalflow.pipeline.stages.indexing import IndexingStage
from fiscalflow.pipeline.stages.validation import ValidationStage
from fiscalflow.pipeline.tool_bridge import ToolCallBridge
from fiscalflow.store.cache import SemanticCache, build_semantic_cache
from fiscalflow.store.job_store import InMemoryJobStore, Job, JobStore, build_job_store

logger = get_logger(__name__)


@dataclass
class PipelineRuntime:
    bus: EventBus
    store: JobStore
    dispatcher: PipelineDispatcher
    stages: list[StageAgent]
    bridge: ToolCallBridge
    tool_executor: ToolExecutor
    alerts: AlertAgent
    registry_client: RegistryClient
    provider: InferenceProvider
    vector_index: VectorIndex
    cache: SemanticCache
    reviewer: StageReviewer | None = None
    _started: bool = field(default=False, init=False)

    def start(self) -> None:
        """Subscribe every component to the bus.  Safe to call twice."""
        if self._started:
            return
        self.dispatcher.register()
        for stage in self.stages:
            stage.register()
        self.tool_executor.register()
        self.alerts.register()
        if self.reviewer is not None:
            self.reviewer.register()
        self._started = True
        logger.info(
            "Pipeline runtime started",
            stages=[s.name for s in self.stages],
            reviews=self.reviewer is not None,
        )

    async def submit(
        self,
        payload: PipelinePayload | dict[str, Any],
        *,
        job_id: str | None = None,
        flow: str | None = None,
    ) -> Job:
        self.start()
        return await self.dispatcher.submit(payload, job_id=job_id, flow=flow)

    async def wait_for_job(self, job_id: str, timeout: float | None = None) -> Job | None:
        """
        Wait for every event cascade on the bus to settle, then read the job.

        Meant for single-job runs (Celery worker, scripts, tests); with
        several jobs in flight it waits for all of them.
        """
        await self.bus.drain(timeout=timeout or settings.JOB_WAIT_TIMEOUT_SECONDS)
        return await self.store.get(job_id)

    async def aclose(self) -> None:
        await self.bus.close()
        await self.registry_client.aclose()
        await self.store.close()


def build_runtime(
    *,
    store: JobStore | None = None,
    provider: InferenceProvider | None = None,
    registry_client: RegistryClient | None = None,
    vector_index: VectorIndex | None = None,
    cache: SemanticCache | None = None,
    bus: EventBus | None = None,
    tool_registry: ToolRegistry | None = None,
    flow_resolver: FlowResolver | None = None,
    lookup_delay: float | None = None,
    enable_reviews: bool | None = None,
) -> PipelineRuntime:
    """Assemble a runtime.  Anything not given comes from settings."""
    bus = bus or EventBus()
    store = store or build_job_store()
    provider = provider or GeminiInferenceProvider()
    registry_client = registry_client or RegistryClient()
    vector_index = vector_index or InMemoryVectorIndex()
    cache = cache or build_semantic_cache("memory" if isinstance(store, InMemoryJobStore) else "redis")
    tool_registry = tool_registry or build_default_registry(registry_client)
    enable_reviews = settings.STAGE_REVIEWS_ENABLED if enable_reviews is None else enable_reviews

    bridge = ToolCallBridge(bus)
    stages: list[StageAgent] = [
        ExtractionStage(bus, store),
        ValidationStage(bus, store, registry_client, lookup_delay=lookup_delay),
        AuditStage(bus, store),
        ClassificationStage(bus, store),
        AnalysisStage(bus, store, provider, bridge, cache=cache, tool_registry=tool_registry),
        IndexingStage(bus, store, vector_index),
    ]

    return PipelineRuntime(
        bus=bus,
        store=store,
        dispatcher=PipelineDispatcher(bus, store, flow_resolver),
        stages=stages,
        bridge=bridge,
        tool_executor=ToolExecutor(bus, tool_registry, bridge=bridge),
        alerts=AlertAgent(bus),
        registry_client=registry_client,
        reviewer=StageReviewer(bus, store, provider, cache, vector_index) if enable_reviews else None,
        provider=provider,
        vector_index=vector_index,
        cache=cache,
    )
