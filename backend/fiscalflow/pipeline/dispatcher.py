"""
PipelineDispatcher — sequences the stages of every job over the event bus.

Responsibilities:
    - Create the job record (stage 0 in-progress, the rest pending)
    - Publish ``task:start`` for the first stage
    - On ``task:completed`` for the current stage: complete the step,
      merge the stage's findings into the job result, then start the
      next stage with the accumulated payload, or complete the job
    - On ``task:failed`` for the current stage: fail the step and the job
    - Ignore every other event (stale, duplicate, wrong stage, terminal job)

Each decision is one atomic JobStore.mutate, so two deliveries of the
same completion can never both advance the job.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

import structlog

from fiscalflow.core.config import settings
from fiscalflow.core.constants import EventName, JobStatus, StepStatus
from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import TaskCompletedEvent, TaskFailedEvent, TaskStartEvent
from fiscalflow.ingestion.file_fingerprint import compute_context_hash
from fiscalflow.pipeline.context import PipelinePayload
from fiscalflow.pipeline.flow_resolver import FlowResolver
from fiscalflow.store.job_store import Job, JobStore, PipelineStep

# Raw inputs stay out of the final job result
_RESULT_EXCLUDED_FIELDS = ("files",)


@dataclass
class Transition:
    """Outcome of one dispatcher decision on a job."""

    applied: bool
    reason: str = ""
    next_stage: str | None = None
    finished: bool = False


class PipelineDispatcher:
    """
    Drives jobs through their flow.

    Usage::

        dispatcher = PipelineDispatcher(bus, store)
        dispatcher.register()
        job = await dispatcher.submit({"files": [...]})
    """

    def __init__(
        self,
        bus: EventBus,
        store: JobStore,
        flow_resolver: FlowResolver | None = None,
        job_ttl_seconds: int | None = None,
    ) -> None:
        self.bus = bus
        self.store = store
        self.flow_resolver = flow_resolver or FlowResolver()
        self.job_ttl_seconds = job_ttl_seconds or settings.JOB_TTL_SECONDS
        self.logger = structlog.get_logger("pipeline.dispatcher")

    def register(self) -> None:
        self.bus.subscribe(EventName.TASK_COMPLETED, self.on_task_completed)
        self.bus.subscribe(EventName.TASK_FAILED, self.on_task_failed)

    # ─── Submission ────────────────────────────────────

    async def submit(
        self,
        payload: PipelinePayload | dict[str, Any],
        *,
        job_id: str | None = None,
        flow: str | None = None,
    ) -> Job:
        """
        Create a job and start its first stage.

        Args:
            payload: Initial payload; at least ``files`` for the default flow.
            job_id: Caller-chosen ID.  Generated when omitted.
            flow: Flow name for FlowResolver.  DEFAULT when omitted.
        """
        job_id = job_id or str(uuid.uuid4())
        if isinstance(payload, PipelinePayload):
            wire_payload = payload.to_wire()
        else:
            wire_payload = PipelinePayload.from_wire(payload).to_wire()

        stages = self.flow_resolver.resolve(flow)
        pipeline = [
            PipelineStep(
                index=index,
                name=stage.name,
                label=stage.label,
                status=StepStatus.IN_PROGRESS if index == 0 else StepStatus.PENDING,
            )
            for index, stage in enumerate(stages)
        ]

        job = await self.store.create(
            job_id,
            pipeline,
            metadata={
                "contextHash": compute_context_hash(wire_payload),
                "flow": (flow or "DEFAULT").upper(),
            },
            ttl=self.job_ttl_seconds,
        )

        self.logger.info(
            "Job submitted",
            job_id=job_id,
            flow=job.metadata["flow"],
            stages=[s.name for s in stages],
            files=len(wire_payload.get("files", [])),
        )

        self.bus.publish(
            EventName.TASK_START,
            TaskStartEvent(job_id=job_id, task_name=stages[0].name, payload=wire_payload),
        )
        return job

    # ─── Completion ────────────────────────────────────

    async def on_task_completed(self, event: TaskCompletedEvent) -> None:
        log = self.logger.bind(job_id=event.job_id, task_name=event.task_name)

        def _advance(job: Job) -> Transition:
            current = job.current_step
            if job.status != JobStatus.PROCESSING:
                return Transition(applied=False, reason=f"job already {job.status}")
            if current is None or current.name != event.task_name:
                return Transition(
                    applied=False,
                    reason=f"current stage is {current.name if current else None}",
                )

            current.transition(StepStatus.COMPLETED)
            job.merge_result(event.result_payload)
            job.metadata["contextHash"] = compute_context_hash(event.payload)

            next_index = job.cursor + 1
            if next_index < len(job.pipeline):
                job.cursor = next_index
                job.pipeline[next_index].transition(StepStatus.IN_PROGRESS)
                return Transition(applied=True, next_stage=job.pipeline[next_index].name)

            job.status = JobStatus.COMPLETED
            job.merge_result({
                key: value
                for key, value in event.payload.items()
                if key not in _RESULT_EXCLUDED_FIELDS
            })
            return Transition(applied=True, finished=True)

        transition = await self.store.mutate(event.job_id, _advance)

        if transition is None:
            log.warning("Completion for unknown or expired job ignored")
            return
        if not transition.applied:
            log.info("Stale completion ignored", reason=transition.reason)
            return

        if transition.finished:
            await self.store.expire(event.job_id, self.job_ttl_seconds)
            log.info("Job completed")
            return

        log.info("Stage completed, starting next", next_stage=transition.next_stage)
        self.bus.publish(
            EventName.TASK_START,
            TaskStartEvent(
                job_id=event.job_id,
                task_name=transition.next_stage,
                payload=event.payload,
            ),
        )

    # ─── Failure ───────────────────────────────────────

    async def on_task_failed(self, event: TaskFailedEvent) -> None:
        log = self.logger.bind(job_id=event.job_id, task_name=event.task_name)

        def _fail(job: Job) -> Transition:
            current = job.current_step
            if job.status != JobStatus.PROCESSING:
                return Transition(applied=False, reason=f"job already {job.status}")
            if current is None or current.name != event.task_name:
                return Transition(
                    applied=False,
                    reason=f"current stage is {current.name if current else None}",
                )
            current.transition(StepStatus.FAILED, info=event.error)
            job.status = JobStatus.FAILED
            job.error = event.error
            return Transition(applied=True, finished=True)

        transition = await self.store.mutate(event.job_id, _fail)

        if transition is None:
            log.warning("Failure for unknown or expired job ignored")
            return
        if not transition.applied:
            log.info("Stale failure ignored", reason=transition.reason)
            return

        await self.store.expire(event.job_id, self.job_ttl_seconds)
        log.error("Job failed, pipeline stopped", error=event.error)
