"""
StageAgent — abstract base class for every pipeline stage.

Every stage of the fiscal pipeline inherits from this class.  The base
class owns the event plumbing: it listens for ``task:start``, filters on
the stage's own name, validates the payload fields the stage declares,
records progress in the Job Store and publishes exactly one terminal
event.  Stages only implement ``run``.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

from fiscalflow.core.constants import EventName, StepStatus
from fiscalflow.core.logging import get_logger
from fiscalflow.events.bus import EventBus
from fiscalflow.events.models import TaskCompletedEvent, TaskFailedEvent, TaskStartEvent
from fiscalflow.pipeline.context import PipelinePayload, StageOutcome
from fiscalflow.store.job_store import Job, JobStore

logger = get_logger(__name__)


class StageAgent(ABC):
    """
    Base class for every stage agent.

    Subclasses MUST define:
        - name (str)           : stage name, e.g. "extraction"
        - description (str)    : human-readable label for logs
        - run(job_id, payload) : the stage's business logic

    Subclasses MAY define:
        - requires (tuple)     : payload fields that must be populated
        - failure_label (str)  : prefix of the task:failed error message
        - progress_note (str)  : step info while the stage works

    ``run`` returns a StageOutcome, or None when the stage suspended
    itself (tool delegation) and will publish its terminal event later.
    """

    name: str = "unnamed_stage"
    description: str = "No description"
    requires: tuple[str, ...] = ()
    failure_label: str = ""
    progress_note: str | None = None

    def __init__(self, bus: EventBus, store: JobStore) -> None:
        self.bus = bus
        self.store = store
        self._running: set[str] = set()

    def register(self) -> None:
        self.bus.subscribe(EventName.TASK_START, self.on_task_start)

    @property
    def error_prefix(self) -> str:
        return self.failure_label or f"{self.name.capitalize()} failed"

    @abstractmethod
    async def run(self, job_id: str, payload: PipelinePayload) -> StageOutcome | None:
        """
        Do the stage's work.

        Read what earlier stages contributed from ``payload`` and return
        this stage's contributions.  Raise on failure; the base class
        turns every exception into ``task:failed``.
        """
        ...

    # ─── Event handling ────────────────────────────────

    async def on_task_start(self, event: TaskStartEvent) -> None:
        if event.task_name != self.name:
            return

        log = logger.bind(job_id=event.job_id, stage=self.name)
        if event.job_id in self._running:
            log.info("Duplicate start ignored", reason="stage already running")
            return

        self._running.add(event.job_id)
        try:
            await self._start(event, log)
        finally:
            self._running.discard(event.job_id)

    async def _start(self, event: TaskStartEvent, log) -> None:
        job = await self.store.get(event.job_id)
        if job is None:
            log.warning("Start for unknown or expired job ignored")
            return
        reason = self.start_conflict(job)
        if reason is not None:
            log.info("Duplicate or stale start ignored", reason=reason)
            return

        started = time.perf_counter()
        log.info("Stage started", description=self.description)
        try:
            payload = PipelinePayload.from_wire(event.payload)
            payload.require(*self.requires, stage_name=self.name, job_id=event.job_id)
            await self.mark_in_progress(event.job_id, self.progress_note)
            outcome = await self.run(event.job_id, payload)
        except Exception as exc:
            await self.fail(event.job_id, exc)
            return

        if outcome is None:
            log.info("Stage suspended")
            return

        await self.complete(event.job_id, payload, outcome)
        log.info(
            "Stage finished",
            duration_ms=int((time.perf_counter() - started) * 1000),
            from_cache=outcome.from_cache,
        )

    def start_conflict(self, job: Job) -> str | None:
        """Why a ``task:start`` for ``job`` must be ignored, or None to run."""
        if job.is_terminal:
            return f"job already {job.status}"
        current = job.current_step
        if current is None or current.name != self.name:
            return f"current stage is {current.name if current else None}"
        if current.status in (StepStatus.COMPLETED, StepStatus.FAILED):
            return f"stage already {current.status}"
        return None

    # ─── Helpers available to all stages ───────────────

    async def _step_index(self, job_id: str) -> int | None:
        job = await self.store.get(job_id)
        return job.step_index(self.name) if job else None

    async def mark_in_progress(self, job_id: str, info: str | None = None) -> None:
        index = await self._step_index(job_id)
        if index is not None:
            await self.store.update_step(job_id, index, StepStatus.IN_PROGRESS, info)

    async def complete(self, job_id: str, payload: PipelinePayload, outcome: StageOutcome) -> None:
        """Mark the step completed and publish ``task:completed``."""
        index = await self._step_index(job_id)
        if index is not None:
            await self.store.update_step(job_id, index, StepStatus.COMPLETED, outcome.info)

        accumulated = payload.merged(**outcome.contributions)
        self.bus.publish(
            EventName.TASK_COMPLETED,
            TaskCompletedEvent(
                job_id=job_id,
                task_name=self.name,
                result_payload=outcome.result_payload,
                payload=accumulated.to_wire(),
            ),
        )

    async def fail(self, job_id: str, exc: BaseException) -> None:
        """Publish ``task:failed``.  The payload is left as it was."""
        error = f"{self.error_prefix}: {exc}"
        logger.error(
            "Stage failed",
            job_id=job_id,
            stage=self.name,
            error=error,
            error_type=type(exc).__name__,
        )
        self.bus.publish(
            EventName.TASK_FAILED,
            TaskFailedEvent(job_id=job_id, task_name=self.name, error=error),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
